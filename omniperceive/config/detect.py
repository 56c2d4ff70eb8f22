"""
Per-call detection configuration.

DetectConfig is an immutable snapshot of every option a detection call reads.
Callers pass partial overrides (nested dicts, camelCase or snake_case keys) and
merge_config() folds them into the current snapshot once per call; the merged
result is never mutated while the call runs.

Example:
    config = merge_config(default_config(), {
        'async': False,
        'object': {'enabled': True, 'minConfidence': 0.3},
    })
"""

import re
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field

from omniperceive.config.settings import get_settings


class _Section(BaseModel):
    class Config:
        frozen = True
        extra = 'ignore'
        protected_namespaces = ()


# =============================================================================
# Face
# =============================================================================
class FaceAttributeConfig(_Section):
    """Options for one face-dependent model (age, gender, emotion, ...)."""

    enabled: bool = True
    model_path: str = ''
    min_confidence: float = Field(default=0.1, ge=0.0, le=1.0)
    max_results: int = Field(default=5, ge=1)


class FaceConfig(_Section):
    enabled: bool = True
    model_path: str = 'scrfd_500m.onnx'
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    iou_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    max_detected: int = Field(default=10, ge=1)
    age: FaceAttributeConfig = FaceAttributeConfig(model_path='age.onnx')
    gender: FaceAttributeConfig = FaceAttributeConfig(model_path='gender.onnx')
    emotion: FaceAttributeConfig = FaceAttributeConfig(model_path='emotion.onnx')
    embedding: FaceAttributeConfig = FaceAttributeConfig(
        enabled=False, model_path='mobilefacenet.onnx'
    )
    description: FaceAttributeConfig = FaceAttributeConfig(
        enabled=False, model_path='faceres.onnx'
    )


# =============================================================================
# Body / Hand / Object
# =============================================================================
class BodyConfig(_Section):
    enabled: bool = True
    # variant (posenet, blazepose, efficientpose) is picked by substring
    model_path: str = 'posenet.onnx'
    max_detected: int = Field(default=1, ge=1)
    score_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    output_stride: int = Field(default=16, ge=1)


class HandConfig(_Section):
    enabled: bool = True
    detector_model_path: str = 'handdetect.onnx'
    skeleton_model_path: str = 'handskeleton.onnx'
    min_confidence: float = Field(default=0.1, ge=0.0, le=1.0)
    iou_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_detected: int = Field(default=1, ge=1)


class ObjectConfig(_Section):
    enabled: bool = False
    model_path: str = 'nanodet.onnx'
    min_confidence: float = Field(default=0.15, ge=0.0, le=1.0)
    iou_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    max_results: int = Field(default=10, ge=1)
    skip_frames: int = Field(default=13, ge=0)
    # background/ignore class of the bundled COCO label set
    ignore_class: int | None = 61


class GestureConfig(_Section):
    enabled: bool = True


class ImageConfig(_Section):
    """Optional resize applied before any model sees the frame (0 keeps native)."""

    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)


# =============================================================================
# Top level
# =============================================================================
class DetectConfig(_Section):
    backend: str = 'cpu'
    model_base_path: str = 'models'
    async_mode: bool = True
    video_optimized: bool = True
    scoped: bool = False
    debug: bool = False
    warmup: Literal['none', 'face', 'body', 'full'] = 'face'
    face: FaceConfig = FaceConfig()
    body: BodyConfig = BodyConfig()
    hand: HandConfig = HandConfig()
    object: ObjectConfig = ObjectConfig()
    gesture: GestureConfig = GestureConfig()
    image: ImageConfig = ImageConfig()

    def resolve_path(self, model_path: str) -> str:
        """Resolve a model path against model_base_path unless absolute or a URL."""
        if not model_path or model_path.startswith(('/', 'http://', 'https://')):
            return model_path
        if not self.model_base_path:
            return model_path
        return f'{self.model_base_path.rstrip("/")}/{model_path}'


# Keys that cannot be derived by camelCase -> snake_case conversion
_KEY_ALIASES = {
    'async': 'async_mode',
}

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')


def _normalize_key(key: str) -> str:
    if key in _KEY_ALIASES:
        return _KEY_ALIASES[key]
    return _CAMEL_BOUNDARY.sub('_', key).lower()


def _normalize(overrides: Mapping[str, Any]) -> dict[str, Any]:
    normalized = {}
    for key, value in overrides.items():
        if isinstance(value, Mapping):
            value = _normalize(value)
        normalized[_normalize_key(str(key))] = value
    return normalized


def _deep_merge(target: dict[str, Any], source: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in source.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value
    return target


def merge_config(
    base: DetectConfig,
    overrides: Mapping[str, Any] | DetectConfig | None = None,
) -> DetectConfig:
    """
    Merge caller overrides into a configuration snapshot.

    Args:
        base: Current configuration
        overrides: Partial nested mapping, a full DetectConfig, or None

    Returns:
        New validated DetectConfig (base is left untouched)
    """
    if overrides is None:
        return base
    if isinstance(overrides, DetectConfig):
        return overrides
    data = base.model_dump()
    _deep_merge(data, _normalize(overrides))
    return DetectConfig.model_validate(data)


def default_config() -> DetectConfig:
    """Build the starting configuration from service settings."""
    settings = get_settings()
    return DetectConfig(
        backend=settings.default_backend,
        model_base_path=settings.model_base_path,
    )
