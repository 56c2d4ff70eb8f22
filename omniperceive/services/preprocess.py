"""
Frame preprocessing using cv2 and numpy.

Preprocessing functions:
- decode_image: encoded bytes (JPEG/PNG/...) -> RGB uint8 frame
- validate_input: reject inputs no pipeline can use
- process: normalize a caller frame into the shared frame tensor + canvas
- prepare_input: resize/scale/transpose a frame for one model's signature
- crop_and_resize: cut a box out of a frame at a model's input size

The shared frame tensor is [1, H, W, 3] float32 in 0..255 (RGB). Each
pipeline derives its own model input from it.
"""

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from omniperceive.config.detect import DetectConfig
from omniperceive.core.exceptions import ImageConversionError, InvalidInputError


logger = logging.getLogger(__name__)


@dataclass
class ProcessedImage:
    """Result of preprocessing one caller frame.

    Attributes:
        tensor: [1, H, W, 3] FP32, RGB, 0..255
        canvas: [H, W, 3] uint8 copy for drawing/inspection
    """

    tensor: np.ndarray
    canvas: np.ndarray

    @property
    def height(self) -> int:
        return int(self.tensor.shape[1])

    @property
    def width(self) -> int:
        return int(self.tensor.shape[2])

    @property
    def frame(self) -> np.ndarray:
        """Frame without batch dimension, [H, W, 3]."""
        return self.tensor[0]


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode image bytes to an RGB uint8 frame.

    Raises:
        ImageConversionError: Bytes are not a decodable image
    """
    buffer = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    if img is None:
        raise ImageConversionError('could not decode image bytes')
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)


def validate_input(frame) -> np.ndarray:
    """
    Check that a caller input is a frame some pipeline can consume.

    Accepts [H, W], [H, W, C] or [1, H, W, C] arrays with C in (1, 3, 4).

    Returns:
        The frame as [H, W, C] (batch dimension dropped)

    Raises:
        InvalidInputError: None, not an array, or an unusable shape
    """
    if frame is None:
        raise InvalidInputError('input is empty')
    if not isinstance(frame, np.ndarray):
        raise InvalidInputError(f'input type is not recognized: {type(frame).__name__}')

    if frame.ndim == 4:
        if frame.shape[0] != 1:
            raise InvalidInputError(f'batched input is not supported: shape {frame.shape}')
        frame = frame[0]
    if frame.ndim == 2:
        frame = frame[:, :, np.newaxis]
    if frame.ndim != 3 or frame.shape[2] not in (1, 3, 4):
        raise InvalidInputError(f'input shape is not an image: {frame.shape}')
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise InvalidInputError(f'input has no pixels: {frame.shape}')
    return frame


def _target_size(height: int, width: int, config: DetectConfig) -> tuple[int, int]:
    """(height, width) after the optional configured resize, aspect kept when one side is 0."""
    target_w, target_h = config.image.width, config.image.height
    if target_w and target_h:
        return target_h, target_w
    if target_w:
        return max(1, round(height * target_w / width)), target_w
    if target_h:
        return target_h, max(1, round(width * target_h / height))
    return height, width


def process(frame: np.ndarray, config: DetectConfig) -> ProcessedImage:
    """
    Normalize a validated frame into the shared frame tensor.

    Args:
        frame: [H, W, C] array (see validate_input)
        config: Detection configuration (image resize options)

    Returns:
        ProcessedImage with [1, H, W, 3] FP32 tensor and uint8 canvas

    Raises:
        ImageConversionError: Pixel data cannot be converted
    """
    if not np.issubdtype(frame.dtype, np.number) or np.issubdtype(frame.dtype, np.complexfloating):
        raise ImageConversionError(f'unsupported pixel type: {frame.dtype}')

    try:
        if frame.dtype == np.uint8:
            rgb = frame
        elif np.issubdtype(frame.dtype, np.floating) and frame.size and float(frame.max()) <= 1.0:
            # float frames in 0..1
            rgb = np.clip(frame * 255.0, 0, 255).astype(np.uint8)
        else:
            rgb = np.clip(frame, 0, 255).astype(np.uint8)

        channels = rgb.shape[2]
        if channels == 1:
            rgb = cv2.cvtColor(rgb, cv2.COLOR_GRAY2RGB)
        elif channels == 4:
            rgb = cv2.cvtColor(rgb, cv2.COLOR_RGBA2RGB)

        height, width = rgb.shape[:2]
        target_h, target_w = _target_size(height, width, config)
        if (target_h, target_w) != (height, width):
            rgb = cv2.resize(rgb, (target_w, target_h), interpolation=cv2.INTER_LINEAR)
    except cv2.error as e:
        raise ImageConversionError(f'cannot convert input: {e}') from e

    canvas = np.array(rgb, dtype=np.uint8, order='C', copy=True)
    tensor = canvas.astype(np.float32)[np.newaxis, ...]
    return ProcessedImage(tensor=tensor, canvas=canvas)


def prepare_input(
    image: np.ndarray,
    size: tuple[int, int],
    layout: str = 'NHWC',
    scale: float = 1.0 / 255.0,
    mean: float = 0.0,
) -> np.ndarray:
    """
    Build a model input tensor from an [H, W, 3] frame.

    Args:
        image: Frame (uint8 or float, 0..255)
        size: Model input (height, width)
        layout: 'NHWC' or 'NCHW'
        scale: Multiplier applied after mean subtraction
        mean: Value subtracted before scaling

    Returns:
        [1, h, w, 3] or [1, 3, h, w] FP32 contiguous tensor
    """
    height, width = size
    if image.shape[:2] != (height, width):
        image = cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)
        if image.ndim == 2:
            image = image[:, :, np.newaxis]

    tensor = (image.astype(np.float32) - mean) * scale
    if layout == 'NCHW':
        tensor = tensor.transpose(2, 0, 1)
    return np.ascontiguousarray(tensor[np.newaxis, ...])


def crop_and_resize(
    image: np.ndarray,
    box: tuple[float, float, float, float],
    size: tuple[int, int],
) -> np.ndarray:
    """
    Crop an (x, y, w, h) pixel box out of a frame and resize it.

    Boxes partially outside the frame are clipped; an empty intersection
    yields a black crop.

    Returns:
        [height, width, 3] crop with the frame's dtype
    """
    height, width = size
    img_h, img_w = image.shape[:2]
    x, y, w, h = box
    x1 = int(max(0, np.floor(x)))
    y1 = int(max(0, np.floor(y)))
    x2 = int(min(img_w, np.ceil(x + w)))
    y2 = int(min(img_h, np.ceil(y + h)))

    if x2 <= x1 or y2 <= y1:
        return np.zeros((height, width, image.shape[2]), dtype=image.dtype)

    crop = image[y1:y2, x1:x2]
    return cv2.resize(crop, (width, height), interpolation=cv2.INTER_LINEAR)
