"""
Runtime boundary shared by all inference backends.

A runtime turns a model path into a ModelHandle (load) and a preprocessed
input tensor into a list of raw output buffers (infer). Handles remember the
runtime that created them so an in-flight call keeps using the session it
started with even if the active backend is switched meanwhile.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from omniperceive.core.exceptions import ModelLoadError


@dataclass
class ModelHandle:
    """
    Loaded model plus the metadata derived from its declared signature.

    Attributes:
        name: Model name (file stem or Triton model name)
        path: Configured model path the handle was loaded from
        backend: Backend that owns the session
        runtime: Runtime that executes the session
        session: Opaque runtime session
        input_name: Name of the (single) image input
        input_shape: Declared input shape, dynamic dims as None
        input_layout: 'NCHW' or 'NHWC'
        input_size: (height, width), None entries when dynamic
        output_names: Output names in model order
        output_shapes: Declared output shapes, dynamic dims as None
        binding: Output-role binding set once by the decoding pipeline
        variant: Model family picked from the configured path (body models)
    """

    name: str
    path: str
    backend: str
    runtime: 'InferenceRuntime'
    session: Any
    input_name: str
    input_shape: tuple
    input_layout: str
    input_size: tuple[int | None, int | None]
    output_names: tuple[str, ...]
    output_shapes: tuple[tuple, ...]
    binding: Any = field(default=None, repr=False)
    variant: str | None = None

    def spatial_size(self, default: int) -> tuple[int, int]:
        """(height, width) with dynamic dims replaced by default."""
        height, width = self.input_size
        return (height or default, width or default)

    async def infer(self, tensor: np.ndarray) -> list[np.ndarray]:
        return await self.runtime.infer(self, tensor)


def normalize_shape(shape: Sequence) -> tuple:
    """Convert a declared shape to ints with None for dynamic dims."""
    dims = []
    for dim in shape:
        try:
            value = int(dim)
        except (TypeError, ValueError):
            value = -1
        dims.append(value if value > 0 else None)
    return tuple(dims)


def derive_input_geometry(path: str, shape: tuple) -> tuple[str, tuple[int | None, int | None]]:
    """
    Derive layout and spatial size from a declared 4D image input.

    Args:
        path: Model path (for error messages)
        shape: Normalized input shape

    Returns:
        (layout, (height, width))

    Raises:
        ModelLoadError: Input is not a 4D image tensor
    """
    if len(shape) != 4:
        raise ModelLoadError(path, f'expected a 4D image input, got shape {shape}')
    if shape[1] in (1, 3) and shape[3] not in (1, 3):
        return 'NCHW', (shape[2], shape[3])
    return 'NHWC', (shape[1], shape[2])


class InferenceRuntime(ABC):
    """Backend-specific model loader and executor."""

    backend: str = ''

    async def activate(self) -> None:
        """Verify the backend is usable; raise BackendUnavailableError if not."""
        return None

    @abstractmethod
    async def load(self, path: str) -> ModelHandle:
        """Load a model; raise ModelLoadError on failure."""

    @abstractmethod
    async def infer(self, handle: ModelHandle, tensor: np.ndarray) -> list[np.ndarray]:
        """Run a model; raise InferenceError on failure."""

    async def close(self) -> None:
        return None
