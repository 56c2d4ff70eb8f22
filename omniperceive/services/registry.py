"""
Per-capability model registry.

Holds at most one ModelHandle per capability and loads them lazily from the
active backend. Loads are idempotent: a capability is (re)loaded only when it
has no handle yet or its configured path changed. Every load goes through the
setup lock shared with the BackendManager, so two concurrent detect calls
never load the same model twice and never race a backend switch.
"""

import asyncio
import logging
import time

from omniperceive.clients.backend import BackendManager
from omniperceive.clients.base import ModelHandle
from omniperceive.config.detect import DetectConfig
from omniperceive.core.exceptions import InvalidInputError, ModelLoadError


logger = logging.getLogger(__name__)

CAPABILITIES = (
    'face',
    'age',
    'gender',
    'emotion',
    'embedding',
    'description',
    'hand',
    'hand_skeleton',
    'body',
    'object',
)

BODY_VARIANTS = ('posenet', 'blazepose', 'efficientpose')

FACE_ATTRIBUTES = ('age', 'gender', 'emotion', 'embedding', 'description')


def body_variant(model_path: str) -> str | None:
    """Body model family named in the path, None if none matches."""
    lowered = model_path.lower()
    for variant in BODY_VARIANTS:
        if variant in lowered:
            return variant
    return None


def required_models(config: DetectConfig) -> dict[str, str]:
    """
    Resolved model path per capability the configuration enables.

    Face attribute models are only required while face detection is enabled;
    a body model whose path names no known variant is not required.
    """
    wanted = {}
    if config.face.enabled:
        wanted['face'] = config.resolve_path(config.face.model_path)
        for attribute in FACE_ATTRIBUTES:
            section = getattr(config.face, attribute)
            if section.enabled and section.model_path:
                wanted[attribute] = config.resolve_path(section.model_path)

    if config.body.enabled:
        if body_variant(config.body.model_path):
            wanted['body'] = config.resolve_path(config.body.model_path)
        else:
            logger.warning(f'Unknown body model family: {config.body.model_path}')

    if config.hand.enabled:
        wanted['hand'] = config.resolve_path(config.hand.detector_model_path)
        wanted['hand_skeleton'] = config.resolve_path(config.hand.skeleton_model_path)

    if config.object.enabled:
        wanted['object'] = config.resolve_path(config.object.model_path)

    return wanted


class ModelRegistry:
    """
    Model handles of one orchestrator.

    Args:
        backend: Backend manager providing the active runtime
        lock: Setup lock shared with the backend manager
    """

    def __init__(self, backend: BackendManager, lock: asyncio.Lock | None = None):
        self.backend = backend
        self._lock = lock or asyncio.Lock()
        self._handles: dict[str, ModelHandle] = {}
        self.load_count = 0

    def get(self, capability: str) -> ModelHandle | None:
        return self._handles.get(capability)

    def loaded(self) -> dict[str, str]:
        """Capability -> loaded model path."""
        return {cap: handle.path for cap, handle in self._handles.items()}

    @property
    def body_variant(self) -> str | None:
        handle = self._handles.get('body')
        return handle.variant if handle else None

    def clear(self) -> None:
        """Forget every handle (after a backend switch)."""
        if self._handles:
            logger.info(f'Registry cleared ({len(self._handles)} models)')
        self._handles.clear()

    async def _load_one(self, capability: str, path: str) -> ModelHandle:
        start = time.perf_counter()
        handle = await self.backend.runtime.load(path)
        self.load_count += 1
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f'Loaded {capability}: {path} backend={handle.backend} '
            f'input={handle.input_shape} ({elapsed_ms:.0f}ms)'
        )
        return handle

    async def load(self, config: DetectConfig) -> dict[str, ModelHandle]:
        """
        Ensure every enabled capability has a handle for its configured path.

        Models load concurrently when config.async_mode is set, one after the
        other otherwise. Handles that loaded successfully are kept even when a
        sibling fails.

        Returns:
            Handles loaded by this call (capability -> handle)

        Raises:
            InvalidInputError: No backend is active
            ModelLoadError: A model could not be loaded (first failure)
        """
        wanted = required_models(config)

        async with self._lock:
            runtime = self.backend.runtime
            if runtime is None:
                raise InvalidInputError('backend not loaded')

            pending = {
                cap: path
                for cap, path in wanted.items()
                if cap not in self._handles or self._handles[cap].path != path
            }
            if not pending:
                return {}

            capabilities = list(pending)
            if config.async_mode:
                outcomes = await asyncio.gather(
                    *(self._load_one(cap, pending[cap]) for cap in capabilities),
                    return_exceptions=True,
                )
            else:
                outcomes = []
                for cap in capabilities:
                    try:
                        outcomes.append(await self._load_one(cap, pending[cap]))
                    except ModelLoadError as e:
                        outcomes.append(e)

            loaded = {}
            errors = []
            for cap, outcome in zip(capabilities, outcomes, strict=True):
                if isinstance(outcome, ModelHandle):
                    if cap == 'body':
                        # family from the configured name, not the resolved directory
                        outcome.variant = body_variant(config.body.model_path)
                    self._handles[cap] = outcome
                    loaded[cap] = outcome
                elif isinstance(outcome, ModelLoadError):
                    # stale handle for an old path must not be used
                    self._handles.pop(cap, None)
                    errors.append(outcome)
                else:
                    raise outcome

            if errors:
                raise errors[0]
            return loaded
