"""
Result schemas shared by pipelines, orchestrator and HTTP layer.
"""

from omniperceive.schemas.results import (
    BodyResult,
    ErrorDescriptor,
    FaceResult,
    HandResult,
    Keypoint,
    ObjectDetection,
    Result,
)


__all__ = [
    'BodyResult',
    'ErrorDescriptor',
    'FaceResult',
    'HandResult',
    'Keypoint',
    'ObjectDetection',
    'Result',
]
