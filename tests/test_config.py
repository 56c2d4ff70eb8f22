"""
DetectConfig tests: override normalization, immutability, path resolution.
"""

import pytest
from pydantic import ValidationError

from omniperceive.config.detect import DetectConfig, default_config, merge_config
from omniperceive.config.settings import Settings, get_settings


def test_camel_case_and_async_alias():
    config = merge_config(
        DetectConfig(),
        {'async': False, 'videoOptimized': False, 'object': {'enabled': True, 'minConfidence': 0.3}},
    )

    assert config.async_mode is False
    assert config.video_optimized is False
    assert config.object.enabled is True
    assert config.object.min_confidence == 0.3
    # untouched siblings keep their values
    assert config.object.iou_threshold == 0.4


def test_nested_face_attribute_override():
    config = merge_config(DetectConfig(), {'face': {'emotion': {'enabled': False}}})
    assert config.face.emotion.enabled is False
    assert config.face.age.enabled is True
    assert config.face.emotion.model_path == 'emotion.onnx'


def test_base_left_unchanged():
    base = DetectConfig()
    merged = merge_config(base, {'backend': 'cuda'})
    assert base.backend == 'cpu'
    assert merged.backend == 'cuda'


def test_none_and_full_config():
    base = DetectConfig()
    other = DetectConfig(debug=True)
    assert merge_config(base, None) is base
    assert merge_config(base, other) is other


def test_unknown_keys_ignored():
    config = merge_config(DetectConfig(), {'filter': {'enabled': True}})
    assert config == DetectConfig()


def test_frozen():
    config = DetectConfig()
    with pytest.raises(ValidationError):
        config.backend = 'cuda'


def test_out_of_range_rejected():
    with pytest.raises(ValidationError):
        merge_config(DetectConfig(), {'hand': {'iouThreshold': 1.5}})
    with pytest.raises(ValidationError):
        merge_config(DetectConfig(), {'warmup': 'everything'})


@pytest.mark.parametrize(
    'base, path, expected',
    [
        ('models', 'posenet.onnx', 'models/posenet.onnx'),
        ('models/', 'posenet.onnx', 'models/posenet.onnx'),
        ('models', '/abs/posenet.onnx', '/abs/posenet.onnx'),
        ('models', 'https://host/posenet.onnx', 'https://host/posenet.onnx'),
        ('', 'posenet.onnx', 'posenet.onnx'),
    ],
)
def test_resolve_path(base, path, expected):
    assert DetectConfig(model_base_path=base).resolve_path(path) == expected


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv('DEFAULT_BACKEND', 'triton')
    monkeypatch.setenv('MAX_FILE_SIZE_MB', '2')

    settings = Settings()

    assert settings.default_backend == 'triton'
    assert settings.max_file_size_bytes == 2 * 1024 * 1024


def test_default_config_seeded_from_settings():
    settings = get_settings()
    config = default_config()
    assert config.backend == settings.default_backend
    assert config.model_base_path == settings.model_base_path
