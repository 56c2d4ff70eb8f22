"""
Shared fixtures: an in-memory runtime that serves synthetic models.

FakeRuntime stands in for ONNX Runtime / Triton. Models are registered by
file stem; each one declares an input shape and a function producing fresh
raw outputs per invocation, so pipelines and the orchestrator run end to end
without model files.
"""

import asyncio
from collections import Counter
from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest

from omniperceive.clients.base import (
    InferenceRuntime,
    ModelHandle,
    derive_input_geometry,
    normalize_shape,
)
from omniperceive.config.settings import Settings
from omniperceive.core.exceptions import InferenceError, ModelLoadError
from omniperceive.utils.stride_decode import BASE_GRID, STRIDES


# =============================================================================
# Fake runtime
# =============================================================================
class FakeModel:
    """
    Synthetic model: declared input shape plus an output factory.

    output_shapes is the declared output signature; empty when the model
    declares none.
    """

    def __init__(
        self,
        input_shape: tuple,
        outputs: Callable[[np.ndarray], list[np.ndarray]],
        delay: float = 0.0,
        fail: bool = False,
        output_shapes: tuple = (),
    ):
        self.input_shape = input_shape
        self.output_shapes = output_shapes
        self.outputs = outputs
        self.delay = delay
        self.fail = fail


class FakeRuntime(InferenceRuntime):
    def __init__(self, models: dict[str, FakeModel] | None = None, backend: str = 'cpu'):
        self.backend = backend
        self.models = models or {}
        self.loads: list[str] = []
        self.calls: Counter = Counter()
        self.inputs: dict[str, list[tuple]] = {}
        self.closed = False

    async def load(self, path: str) -> ModelHandle:
        name = Path(path).stem
        model = self.models.get(name)
        if model is None:
            raise ModelLoadError(path, 'file not found')
        self.loads.append(path)
        await asyncio.sleep(0)

        shape = normalize_shape(model.input_shape)
        layout, size = derive_input_geometry(path, shape)
        return ModelHandle(
            name=name,
            path=path,
            backend=self.backend,
            runtime=self,
            session=model,
            input_name='input',
            input_shape=shape,
            input_layout=layout,
            input_size=size,
            output_names=(),
            output_shapes=tuple(normalize_shape(s) for s in model.output_shapes),
        )

    async def infer(self, handle: ModelHandle, tensor: np.ndarray) -> list[np.ndarray]:
        model: FakeModel = handle.session
        self.calls[handle.name] += 1
        self.inputs.setdefault(handle.name, []).append(tensor.shape)
        await asyncio.sleep(model.delay)
        if model.fail:
            raise InferenceError(handle.name, 'synthetic failure')
        return [np.array(o, dtype=np.float32, copy=True) for o in model.outputs(tensor)]

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Synthetic object model outputs
# =============================================================================
NUM_LABELS = 80
BINS = 8


def object_outputs(hits: list[tuple[int, int, int, float, tuple[int, int, int, int]]]) -> list[np.ndarray]:
    """
    Raw stride outputs with the given detections set.

    Args:
        hits: (stride, cell, class, score, bin index per edge)

    Returns:
        [scores_1, features_1, scores_2, features_2, scores_4, features_4]
    """
    outputs = []
    for stride in STRIDES:
        cells = (stride * BASE_GRID) ** 2
        scores = np.zeros((1, cells, NUM_LABELS), dtype=np.float32)
        features = np.zeros((1, cells, 4 * BINS), dtype=np.float32)
        for hit_stride, cell, cls, score, bins in hits:
            if hit_stride != stride:
                continue
            scores[0, cell, cls] = score
            for edge, index in enumerate(bins):
                features[0, cell, edge * BINS + index] = 1.0
        outputs.extend([scores, features])
    return outputs


DEFAULT_HITS = [
    (1, 84, 0, 0.9, (2, 2, 2, 2)),
    (2, 300, 2, 0.7, (3, 1, 3, 1)),
    (4, 2000, 16, 0.5, (1, 1, 1, 1)),
]


def object_model(hits=None, delay: float = 0.0, fail: bool = False) -> FakeModel:
    hits = DEFAULT_HITS if hits is None else hits
    return FakeModel((1, 416, 416, 3), lambda _: object_outputs(hits), delay=delay, fail=fail)


# =============================================================================
# Fixtures
# =============================================================================
@pytest.fixture
def settings() -> Settings:
    return Settings(default_backend='cpu', model_base_path='models', json_logs=False)


@pytest.fixture
def object_only() -> dict:
    """Overrides enabling only object detection."""
    return {
        'face': {'enabled': False},
        'body': {'enabled': False},
        'hand': {'enabled': False},
        'object': {'enabled': True},
        'warmup': 'none',
    }


@pytest.fixture
def frame() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.integers(0, 255, size=(480, 640, 3), dtype=np.uint8)
