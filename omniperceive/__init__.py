"""
OmniPerceive: multi-model perception (face, body, hand, object, gesture)
over ONNX Runtime or Triton Inference Server.
"""

from omniperceive.config import DetectConfig, merge_config
from omniperceive.schemas import ErrorDescriptor, Result
from omniperceive.services import Orchestrator


__version__ = '1.0.0'

__all__ = [
    'DetectConfig',
    'ErrorDescriptor',
    'Orchestrator',
    'Result',
    'merge_config',
]
