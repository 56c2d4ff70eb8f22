"""
Per-frame perception orchestrator.

One Orchestrator owns a backend manager, a model registry, a buffer tracker
and one detector per capability. detect() runs a frame through every enabled
capability, either one after the other (sequential, with per-stage timings)
or all at once (concurrent, asyncio.gather), and aggregates one Result.

Lifecycle states:
    idle -> config -> check -> backend -> load
         -> run:face -> run:body -> run:hand -> run:object -> idle

Errors from the PerceptionError taxonomy never escape detect(), load() or
warmup(); they come back as an ErrorDescriptor.

Usage:
    orchestrator = Orchestrator({'object': {'enabled': True}})
    result = await orchestrator.detect(frame, {'async': False})
    if isinstance(result, ErrorDescriptor):
        ...
"""

import asyncio
import math
import time
from collections.abc import Mapping, Sequence
from contextlib import nullcontext
from typing import Any

import numpy as np
from pydantic import ValidationError

from omniperceive.clients.backend import BackendManager, RuntimeFactory
from omniperceive.config.detect import DetectConfig, merge_config
from omniperceive.config.settings import Settings, get_settings
from omniperceive.core.exceptions import BackendUnavailableError, InvalidInputError, PerceptionError
from omniperceive.core.logging import get_logger
from omniperceive.schemas.results import ErrorDescriptor, Result
from omniperceive.services import gesture
from omniperceive.services.body_pipeline import BodyDetector
from omniperceive.services.buffer_pool import BufferTracker
from omniperceive.services.face_pipeline import FaceDetector
from omniperceive.services.hand_pipeline import HandDetector
from omniperceive.services.object_pipeline import ObjectDetector
from omniperceive.services.preprocess import ProcessedImage, process, validate_input
from omniperceive.services.registry import ModelRegistry


logger = get_logger(__name__)

STAGES = ('face', 'body', 'hand', 'object')

# Synthetic warmup frame (height, width) per warmup mode
WARMUP_FRAMES = {
    'face': (256, 256),
    'body': (1200, 1200),
    'full': (1200, 1200),
}


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _similarity(embedding_a: Sequence[float], embedding_b: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1], 3 decimals."""
    if not embedding_a or len(embedding_a) != len(embedding_b):
        return 0.0
    a = np.asarray(embedding_a, dtype=np.float64)
    b = np.asarray(embedding_b, dtype=np.float64)
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return max(0.0, math.trunc(1000 * float(a @ b) / norm) / 1000)


def synthetic_frame(height: int, width: int) -> np.ndarray:
    """Deterministic gradient frame used for warmup."""
    ys = np.linspace(0, 255, height, dtype=np.float32)[:, None]
    xs = np.linspace(0, 255, width, dtype=np.float32)[None, :]
    frame = np.empty((height, width, 3), dtype=np.uint8)
    frame[:, :, 0] = ys.astype(np.uint8)
    frame[:, :, 1] = xs.astype(np.uint8)
    frame[:, :, 2] = ((ys + xs) / 2).astype(np.uint8)
    return frame


class Orchestrator:
    """
    Multi-model perception entry point.

    Args:
        config: Initial detection options (mapping of overrides or a DetectConfig)
        settings: Service settings (defaults to get_settings())
        runtime_factory: Builds a runtime for a backend name (tests inject fakes)

    Attributes:
        config: Current configuration snapshot; each call's overrides are
            merged into it
        state: Current lifecycle state
        performance: Stage name -> milliseconds of the latest calls
        registry: Loaded model handles
        buffers: Live transient buffer accounting
    """

    def __init__(
        self,
        config: Mapping[str, Any] | DetectConfig | None = None,
        settings: Settings | None = None,
        runtime_factory: RuntimeFactory | None = None,
    ):
        self.settings = settings or get_settings()
        base = DetectConfig(
            backend=self.settings.default_backend,
            model_base_path=self.settings.model_base_path,
        )
        self.config = merge_config(base, config)
        self.state = 'idle'
        self.performance: dict[str, int] = {}
        self.buffers = BufferTracker('detect')

        # one guard for backend switches and model loads
        setup_lock = asyncio.Lock()
        self.backend = BackendManager(self.settings, runtime_factory, lock=setup_lock)
        self.registry = ModelRegistry(self.backend, lock=setup_lock)

        self.face = FaceDetector(self.registry, self.buffers)
        self.body = BodyDetector(self.registry, self.buffers)
        self.hand = HandDetector(self.registry, self.buffers)
        self.object = ObjectDetector(self.registry, self.buffers)

        self._first_run = True

    # =========================================================================
    # Setup
    # =========================================================================
    def _merge(self, overrides: Mapping[str, Any] | DetectConfig | None) -> DetectConfig:
        try:
            self.config = merge_config(self.config, overrides)
        except ValidationError as e:
            raise InvalidInputError(f'invalid configuration: {e}') from e
        return self.config

    async def _ensure_backend(self, config: DetectConfig) -> None:
        if not self._first_run and config.backend == self.backend.active:
            return

        self.state = 'backend'
        start = time.perf_counter()
        try:
            switched = await self.backend.ensure(config.backend)
        except BackendUnavailableError as e:
            raise InvalidInputError('backend not loaded') from e

        if switched:
            self.registry.clear()
            self.object.reset()
            log = logger.info if config.debug else logger.debug
            log('backend_switched', backend=self.backend.active, requested=config.backend)
        self.performance['backend'] = _elapsed_ms(start)
        self._first_run = False

    async def _ensure_models(self, config: DetectConfig) -> None:
        self.state = 'load'
        start = time.perf_counter()
        loaded = await self.registry.load(config)
        if loaded:
            current = _elapsed_ms(start)
            if current > self.performance.get('load', 0):
                self.performance['load'] = current
            log = logger.info if config.debug else logger.debug
            log('models_loaded', models=sorted(loaded), elapsed_ms=current)

    async def load(
        self, overrides: Mapping[str, Any] | DetectConfig | None = None
    ) -> ErrorDescriptor | None:
        """
        Activate the backend and load every enabled model ahead of detect().

        Returns:
            None on success, ErrorDescriptor on failure
        """
        try:
            config = self._merge(overrides)
            await self._ensure_backend(config)
            await self._ensure_models(config)
        except PerceptionError as e:
            logger.warning('load_failed', error=str(e), kind=type(e).__name__)
            return ErrorDescriptor.from_exception(e)
        finally:
            self.state = 'idle'
        return None

    # =========================================================================
    # Detection
    # =========================================================================
    async def _stage(self, name: str, coro) -> Any:
        """Run one stage sequentially and record its timing."""
        self.state = f'run:{name}'
        start = time.perf_counter()
        result = await coro
        current = _elapsed_ms(start)
        if current > 0:
            self.performance[name] = current
        return result

    async def _run_pipelines(self, image: ProcessedImage, config: DetectConfig) -> list:
        pipelines = {
            'face': self.face,
            'body': self.body,
            'hand': self.hand,
            'object': self.object,
        }

        if not config.async_mode:
            return [
                await self._stage(name, pipeline.predict(image, config))
                for name, pipeline in pipelines.items()
            ]

        self.state = 'run:' + ','.join(STAGES)
        # every pipeline completes before the first failure is raised
        outcomes = await asyncio.gather(
            *(pipeline.predict(image, config) for pipeline in pipelines.values()),
            return_exceptions=True,
        )
        for name in STAGES:
            self.performance.pop(name, None)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return outcomes

    async def _detect(self, source: Any, config: DetectConfig, start: float) -> Result:
        self.state = 'check'
        frame = validate_input(source)

        await self._ensure_backend(config)
        await self._ensure_models(config)

        with self.buffers.scope() if config.scoped else nullcontext():
            stage_start = time.perf_counter()
            image = process(frame, config)
            self.buffers.track(image.tensor)
            self.performance['image'] = _elapsed_ms(stage_start)
            try:
                faces, bodies, hands, objects = await self._run_pipelines(image, config)
            finally:
                if self.buffers.is_live(image.tensor):
                    self.buffers.release(image.tensor)

        gestures = []
        if config.gesture.enabled:
            stage_start = time.perf_counter()
            gestures = [
                *gesture.face(faces or ()),
                *gesture.body(bodies or ()),
                *gesture.hand(hands or ()),
            ]
            if not config.async_mode:
                self.performance['gesture'] = _elapsed_ms(stage_start)
            else:
                self.performance.pop('gesture', None)

        self.performance['total'] = _elapsed_ms(start)
        return Result(
            face=tuple(faces or ()),
            body=tuple(bodies or ()),
            hand=tuple(hands or ()),
            gesture=tuple(gestures),
            object=tuple(objects or ()),
            performance=dict(self.performance),
            canvas=image.canvas,
        )

    async def detect(
        self,
        source: Any,
        overrides: Mapping[str, Any] | DetectConfig | None = None,
    ) -> Result | ErrorDescriptor:
        """
        Run every enabled capability on one frame.

        Args:
            source: Frame as [H, W, C] or [1, H, W, C] array (C in 1, 3, 4)
            overrides: Partial options merged into the current configuration

        Returns:
            Result on success, ErrorDescriptor on any pipeline error
        """
        start = time.perf_counter()
        self.state = 'config'
        try:
            config = self._merge(overrides)
            result = await self._detect(source, config, start)
        except PerceptionError as e:
            logger.warning('detect_failed', error=str(e), kind=type(e).__name__, state=self.state)
            return ErrorDescriptor.from_exception(e)
        finally:
            self.state = 'idle'

        if config.debug:
            logger.info(
                'detect_complete',
                faces=len(result.face),
                bodies=len(result.body),
                hands=len(result.hand),
                objects=len(result.object),
                total_ms=result.performance['total'],
            )
        return result

    async def warmup(
        self, overrides: Mapping[str, Any] | DetectConfig | None = None
    ) -> Result | ErrorDescriptor | None:
        """
        Run one detection on a synthetic frame to initialize every model.

        Frame skipping is off for the warmup call only.

        Returns:
            None when config.warmup is 'none', otherwise the detect() outcome
        """
        try:
            config = self._merge(overrides)
        except InvalidInputError as e:
            return ErrorDescriptor.from_exception(e)
        if config.warmup == 'none':
            return None

        start = time.perf_counter()
        height, width = WARMUP_FRAMES[config.warmup]
        video_optimized = config.video_optimized
        try:
            result = await self.detect(synthetic_frame(height, width), {'video_optimized': False})
        finally:
            self.config = self.config.model_copy(update={'video_optimized': video_optimized})

        logger.info('warmup_complete', mode=config.warmup, elapsed_ms=_elapsed_ms(start))
        return result

    # =========================================================================
    # Face matching
    # =========================================================================
    def similarity(self, embedding_a: Sequence[float], embedding_b: Sequence[float]) -> float:
        """Similarity in [0, 1] of two face embeddings, 0 when no embedding model is enabled."""
        face = self.config.face
        if face.description.enabled or face.embedding.enabled:
            return _similarity(embedding_a, embedding_b)
        return 0.0

    def match(
        self,
        embedding: Sequence[float],
        db: Sequence[Mapping[str, Any]],
        threshold: float = 0.0,
    ) -> dict[str, Any]:
        """
        Best database entry for a face embedding.

        Args:
            embedding: Query embedding
            db: Entries with at least 'name' and 'embedding' (extra keys are kept)
            threshold: Similarity must be strictly above this

        Returns:
            Best entry plus its 'similarity'; an empty entry when nothing matches
        """
        best: dict[str, Any] = {'name': '', 'source': '', 'similarity': 0.0, 'embedding': []}
        for entry in db:
            if not entry.get('name') or not entry.get('embedding'):
                continue
            score = _similarity(embedding, entry['embedding'])
            if score > threshold and score > best['similarity']:
                best = {**entry, 'similarity': score}
        return best

    async def close(self) -> None:
        await self.backend.close()
        self.registry.clear()
