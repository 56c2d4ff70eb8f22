"""
Configuration: process settings (environment) and per-call detect options.
"""

from omniperceive.config.detect import (
    BodyConfig,
    DetectConfig,
    FaceAttributeConfig,
    FaceConfig,
    GestureConfig,
    HandConfig,
    ImageConfig,
    ObjectConfig,
    default_config,
    merge_config,
)
from omniperceive.config.settings import Settings, get_settings


__all__ = [
    'BodyConfig',
    'DetectConfig',
    'FaceAttributeConfig',
    'FaceConfig',
    'GestureConfig',
    'HandConfig',
    'ImageConfig',
    'ObjectConfig',
    'Settings',
    'default_config',
    'get_settings',
    'merge_config',
]
