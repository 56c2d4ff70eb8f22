"""
Local ONNX Runtime backend.

Backends map to execution providers:
- cpu: CPUExecutionProvider
- cuda: CUDAExecutionProvider (CPU fallback for unsupported ops)
- tensorrt: TensorrtExecutionProvider (CUDA, then CPU fallback)

Session creation and session.run() block, so both run in a thread pool; the
event loop only suspends on them. This is what lets independent pipelines
overlap in concurrent mode.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path

import numpy as np
import onnxruntime as ort

from omniperceive.clients.base import (
    InferenceRuntime,
    ModelHandle,
    derive_input_geometry,
    normalize_shape,
)
from omniperceive.core.exceptions import BackendUnavailableError, InferenceError, ModelLoadError


logger = logging.getLogger(__name__)

PROVIDERS = {
    'cpu': ['CPUExecutionProvider'],
    'cuda': ['CUDAExecutionProvider', 'CPUExecutionProvider'],
    'tensorrt': ['TensorrtExecutionProvider', 'CUDAExecutionProvider', 'CPUExecutionProvider'],
}


def available_backends() -> list[str]:
    """Backends whose primary execution provider is present in this build."""
    providers = set(ort.get_available_providers())
    return [name for name, chain in PROVIDERS.items() if chain[0] in providers]


class OnnxRuntime(InferenceRuntime):
    """
    ONNX Runtime sessions executed on a shared thread pool.

    Args:
        backend: One of PROVIDERS
        executor: Thread pool used for session creation and inference
    """

    def __init__(self, backend: str, executor: ThreadPoolExecutor):
        if backend not in PROVIDERS:
            raise BackendUnavailableError(backend, f'unknown backend, expected one of {sorted(PROVIDERS)}')

        available = ort.get_available_providers()
        chain = PROVIDERS[backend]
        if chain[0] not in available:
            raise BackendUnavailableError(backend, f'{chain[0]} not available (have {available})')

        self.backend = backend
        self.providers = [p for p in chain if p in available]
        self._executor = executor

    def _create_session(self, path: str) -> ort.InferenceSession:
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        options.log_severity_level = 3
        return ort.InferenceSession(path, sess_options=options, providers=self.providers)

    async def load(self, path: str) -> ModelHandle:
        if not Path(path).is_file():
            raise ModelLoadError(path, 'file not found')

        loop = asyncio.get_running_loop()
        try:
            session = await loop.run_in_executor(self._executor, partial(self._create_session, path))
        except Exception as e:
            raise ModelLoadError(path, str(e)) from e

        inputs = session.get_inputs()
        if not inputs:
            raise ModelLoadError(path, 'model declares no inputs')

        input_shape = normalize_shape(inputs[0].shape)
        layout, size = derive_input_geometry(path, input_shape)
        outputs = session.get_outputs()

        logger.debug(f'ONNX session ready: {path} providers={session.get_providers()}')
        return ModelHandle(
            name=Path(path).stem,
            path=path,
            backend=self.backend,
            runtime=self,
            session=session,
            input_name=inputs[0].name,
            input_shape=input_shape,
            input_layout=layout,
            input_size=size,
            output_names=tuple(o.name for o in outputs),
            output_shapes=tuple(normalize_shape(o.shape) for o in outputs),
        )

    async def infer(self, handle: ModelHandle, tensor: np.ndarray) -> list[np.ndarray]:
        loop = asyncio.get_running_loop()
        feed = {handle.input_name: np.ascontiguousarray(tensor, dtype=np.float32)}
        try:
            outputs = await loop.run_in_executor(
                self._executor, partial(handle.session.run, None, feed)
            )
        except Exception as e:
            raise InferenceError(handle.name, str(e)) from e
        return list(outputs)
