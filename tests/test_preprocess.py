"""
Preprocessing tests: input validation, frame normalization, model inputs.
"""

import cv2
import numpy as np
import pytest

from omniperceive.config.detect import DetectConfig, merge_config
from omniperceive.core.exceptions import ImageConversionError, InvalidInputError
from omniperceive.services.preprocess import (
    crop_and_resize,
    decode_image,
    prepare_input,
    process,
    validate_input,
)


# =============================================================================
# validate_input
# =============================================================================
def test_validate_drops_batch_and_adds_channel():
    assert validate_input(np.zeros((1, 4, 5, 3), dtype=np.uint8)).shape == (4, 5, 3)
    assert validate_input(np.zeros((4, 5), dtype=np.uint8)).shape == (4, 5, 1)


@pytest.mark.parametrize(
    'source',
    [None, [[1, 2], [3, 4]], np.zeros((4, 5, 2)), np.zeros((3, 4, 5, 3)), np.zeros((0, 5, 3))],
)
def test_validate_rejects(source):
    with pytest.raises(InvalidInputError):
        validate_input(source)


# =============================================================================
# process
# =============================================================================
def test_process_uint8_rgb():
    frame = np.full((6, 8, 3), 200, dtype=np.uint8)
    image = process(frame, DetectConfig())

    assert image.tensor.shape == (1, 6, 8, 3)
    assert image.tensor.dtype == np.float32
    assert image.height == 6 and image.width == 8
    assert float(image.tensor.max()) == 200.0
    assert image.canvas is not frame


def test_process_gray_and_rgba():
    gray = process(np.full((4, 4, 1), 9, dtype=np.uint8), DetectConfig())
    rgba = process(np.full((4, 4, 4), 9, dtype=np.uint8), DetectConfig())
    assert gray.canvas.shape == (4, 4, 3)
    assert rgba.canvas.shape == (4, 4, 3)


def test_process_unit_float_is_scaled():
    image = process(np.ones((2, 2, 3), dtype=np.float32), DetectConfig())
    assert float(image.tensor.min()) == 255.0


def test_process_resize_keeps_aspect():
    config = merge_config(DetectConfig(), {'image': {'width': 320}})
    image = process(np.zeros((480, 640, 3), dtype=np.uint8), config)
    assert (image.height, image.width) == (240, 320)


def test_process_rejects_non_numeric():
    with pytest.raises(ImageConversionError):
        process(np.array([[['a', 'b', 'c']]]), DetectConfig())


# =============================================================================
# decode_image
# =============================================================================
def test_decode_image_returns_rgb():
    bgr = np.zeros((8, 8, 3), dtype=np.uint8)
    bgr[:, :, 0] = 255  # blue in BGR
    ok, encoded = cv2.imencode('.png', bgr)
    assert ok

    rgb = decode_image(encoded.tobytes())

    assert rgb.shape == (8, 8, 3)
    assert rgb[0, 0, 2] == 255 and rgb[0, 0, 0] == 0


@pytest.mark.parametrize('data', [b'', b'not an image'])
def test_decode_image_rejects_garbage(data):
    with pytest.raises(ImageConversionError):
        decode_image(data)


# =============================================================================
# prepare_input / crop_and_resize
# =============================================================================
def test_prepare_input_layouts():
    frame = np.full((10, 20, 3), 255, dtype=np.uint8)

    nhwc = prepare_input(frame, (16, 16))
    nchw = prepare_input(frame, (16, 16), layout='NCHW')

    assert nhwc.shape == (1, 16, 16, 3)
    assert nchw.shape == (1, 3, 16, 16)
    assert nhwc.flags['C_CONTIGUOUS'] and nchw.flags['C_CONTIGUOUS']
    assert np.allclose(nhwc, 1.0)


def test_prepare_input_mean_and_scale():
    frame = np.full((4, 4, 3), 127.5, dtype=np.float32)
    tensor = prepare_input(frame, (4, 4), scale=1 / 127.5, mean=127.5)
    assert np.allclose(tensor, 0.0)


def test_prepare_input_single_channel_keeps_axis():
    frame = np.zeros((10, 10, 1), dtype=np.uint8)
    assert prepare_input(frame, (5, 5)).shape == (1, 5, 5, 1)


def test_crop_and_resize_clips_to_frame():
    frame = np.zeros((10, 10, 3), dtype=np.uint8)
    frame[:5, :5] = 100

    crop = crop_and_resize(frame, (-5, -5, 10, 10), (4, 4))

    assert crop.shape == (4, 4, 3)
    assert int(crop.min()) == 100


def test_crop_outside_frame_is_black():
    frame = np.full((10, 10, 3), 50, dtype=np.uint8)
    crop = crop_and_resize(frame, (20, 20, 5, 5), (3, 3))
    assert crop.shape == (3, 3, 3)
    assert not crop.any()
