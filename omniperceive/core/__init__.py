"""
Core module with the exception taxonomy and structured logging.
"""

from omniperceive.core.exceptions import (
    BackendUnavailableError,
    ImageConversionError,
    InferenceError,
    InvalidInputError,
    ModelLoadError,
    PerceptionError,
)
from omniperceive.core.logging import configure_logging, get_logger


__all__ = [
    'BackendUnavailableError',
    'ImageConversionError',
    'InferenceError',
    'InvalidInputError',
    'ModelLoadError',
    'PerceptionError',
    'configure_logging',
    'get_logger',
]
