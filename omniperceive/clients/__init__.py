"""
Inference runtimes: local ONNX Runtime sessions and remote Triton models.
"""

from omniperceive.clients.backend import FALLBACK_BACKEND, BackendManager
from omniperceive.clients.base import InferenceRuntime, ModelHandle
from omniperceive.clients.onnx_runtime import OnnxRuntime, available_backends
from omniperceive.clients.triton_runtime import TritonRuntime


__all__ = [
    'FALLBACK_BACKEND',
    'BackendManager',
    'InferenceRuntime',
    'ModelHandle',
    'OnnxRuntime',
    'TritonRuntime',
    'available_backends',
]
