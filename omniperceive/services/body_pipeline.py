"""
Body pose pipeline.

The model family is picked by substring of body.model_path:

- posenet: single-pose decode of a keypoint heatmap [1, h, w, 17] and its
  offsets [1, h, w, 34] (17 COCO parts)
- blazepose: flat landmark tensor with 195 (full, 39 points) or 155 (upper
  body, 31 points) values, 5 per point: x, y, z, visibility, presence.
  x/y are in 0..255 model space; visibility and presence are logits
- efficientpose: per-part heatmaps [1, h, w, 16], peak per channel
"""

import logging

import numpy as np

from omniperceive.clients.base import ModelHandle
from omniperceive.config.detect import BodyConfig, DetectConfig
from omniperceive.core.exceptions import InferenceError
from omniperceive.schemas.results import BodyResult, Keypoint
from omniperceive.services.buffer_pool import BufferTracker
from omniperceive.services.preprocess import ProcessedImage, prepare_input
from omniperceive.services.registry import ModelRegistry


logger = logging.getLogger(__name__)

# =============================================================================
# Keypoint annotations
# =============================================================================
POSENET_PARTS = (
    'nose', 'leftEye', 'rightEye', 'leftEar', 'rightEar',
    'leftShoulder', 'rightShoulder', 'leftElbow', 'rightElbow',
    'leftWrist', 'rightWrist', 'leftHip', 'rightHip',
    'leftKnee', 'rightKnee', 'leftAnkle', 'rightAnkle',
)

_BLAZEPOSE_UPPER_CORE = (
    'nose', 'leftEyeInside', 'leftEye', 'leftEyeOutside',
    'rightEyeInside', 'rightEye', 'rightEyeOutside', 'leftEar', 'rightEar',
    'leftMouth', 'rightMouth', 'leftShoulder', 'rightShoulder',
    'leftElbow', 'rightElbow', 'leftWrist', 'rightWrist',
    'leftPalm', 'rightPalm', 'leftIndex', 'rightIndex',
    'leftPinky', 'rightPinky', 'leftHip', 'rightHip',
)
_BLAZEPOSE_LOWER = (
    'leftKnee', 'rightKnee', 'leftAnkle', 'rightAnkle',
    'leftHeel', 'rightHeel', 'leftFoot', 'rightFoot',
)
_BLAZEPOSE_EXTRA = ('midHip', 'forehead', 'leftThumb', 'leftHand', 'rightThumb', 'rightHand')

BLAZEPOSE_FULL = _BLAZEPOSE_UPPER_CORE + _BLAZEPOSE_LOWER + _BLAZEPOSE_EXTRA
BLAZEPOSE_UPPER = _BLAZEPOSE_UPPER_CORE + _BLAZEPOSE_EXTRA
BLAZEPOSE_DEPTH = 5

EFFICIENTPOSE_PARTS = (
    'head', 'neck', 'rightShoulder', 'rightElbow', 'rightWrist', 'chest',
    'leftShoulder', 'leftElbow', 'leftWrist', 'pelvis',
    'rightHip', 'rightKnee', 'rightAnkle', 'leftHip', 'leftKnee', 'leftAnkle',
)

DEFAULT_INPUT_SIZE = {'posenet': 257, 'blazepose': 256, 'efficientpose': 224}

# (mean, scale) applied to the 0..255 frame
NORMALIZATION = {
    'posenet': (127.5, 1.0 / 127.5),
    'blazepose': (0.0, 1.0 / 255.0),
    'efficientpose': (0.0, 1.0 / 255.0),
}


def _reverse_sigmoid(value: float) -> float:
    """Two-decimal probability of a logit, truncated like the model's reference output."""
    return (100 - int(100 / (1 + np.exp(value)))) / 100


def _sigmoid(values: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-values))


def _hwc(output: np.ndarray) -> np.ndarray:
    """Drop the batch dim of a [1, h, w, c] map."""
    return output.reshape(output.shape[-3:]) if output.ndim >= 3 else output


# =============================================================================
# Decoders
# =============================================================================
def decode_posenet(
    outputs: list[np.ndarray],
    input_size: tuple[int, int],
    frame_size: tuple[int, int],
    options: BodyConfig,
) -> list[BodyResult]:
    """
    Single-pose decode: strongest heatmap cell per part refined by its offset.

    Args:
        outputs: Raw outputs (heatmap and offsets are matched by channel count)
        input_size: Model input (height, width)
        frame_size: Frame (height, width) keypoints are reported against
        options: Body options (output_stride, score_threshold)
    """
    parts = len(POSENET_PARTS)
    heatmap = next((o for o in outputs if o.shape[-1] == parts), None)
    offsets = next((o for o in outputs if o.shape[-1] == 2 * parts), None)
    if heatmap is None or offsets is None:
        logger.warning('posenet outputs do not match the single-pose signature')
        return []

    heatmap = _sigmoid(_hwc(heatmap).astype(np.float64))
    offsets = _hwc(offsets)
    heat_h, heat_w = heatmap.shape[:2]
    scale_y = frame_size[0] / input_size[0]
    scale_x = frame_size[1] / input_size[1]

    keypoints = []
    for k, part in enumerate(POSENET_PARTS):
        y, x = np.unravel_index(int(heatmap[:, :, k].argmax()), (heat_h, heat_w))
        pos_y = y * options.output_stride + float(offsets[y, x, k])
        pos_x = x * options.output_stride + float(offsets[y, x, k + parts])
        keypoints.append(
            Keypoint(
                id=k,
                part=part,
                position=(int(pos_x * scale_x), int(pos_y * scale_y), 0),
                score=round(float(heatmap[y, x, k]), 2),
            )
        )

    score = round(sum(kp.score for kp in keypoints) / len(keypoints), 2)
    if score < options.score_threshold:
        return []
    return [BodyResult(id=0, score=score, keypoints=tuple(keypoints))]


def decode_blazepose(outputs: list[np.ndarray], frame_size: tuple[int, int]) -> list[BodyResult]:
    """Decode the 195/155 value landmark tensor (output order varies by model)."""
    points = next((o for o in outputs if o.size in (195, 155)), None)
    if points is None:
        logger.warning('blazepose outputs have no 195 or 155 value landmark tensor')
        return []

    points = points.reshape(-1)
    labels = BLAZEPOSE_FULL if points.size == 195 else BLAZEPOSE_UPPER
    height, width = frame_size

    keypoints = []
    for i in range(points.size // BLAZEPOSE_DEPTH):
        x, y, z, visibility, presence = points[BLAZEPOSE_DEPTH * i : BLAZEPOSE_DEPTH * (i + 1)]
        keypoints.append(
            Keypoint(
                id=i,
                part=labels[i],
                position=(
                    int(width * float(x) / 255),
                    int(height * float(y) / 255),
                    int(float(z)),
                ),
                score=_reverse_sigmoid(float(visibility)),
                presence=_reverse_sigmoid(float(presence)),
            )
        )

    score = max((kp.score for kp in keypoints), default=0.0)
    return [BodyResult(id=0, score=score, keypoints=tuple(keypoints))]


def decode_efficientpose(
    outputs: list[np.ndarray],
    frame_size: tuple[int, int],
    options: BodyConfig,
) -> list[BodyResult]:
    """Peak of each part heatmap; parts at or below score_threshold are dropped."""
    parts = len(EFFICIENTPOSE_PARTS)
    heatmap = next((o for o in outputs if o.ndim >= 3 and o.shape[-1] == parts), None)
    if heatmap is None:
        logger.warning('efficientpose outputs have no 16-part heatmap')
        return []

    heatmap = _hwc(heatmap)
    heat_h, heat_w = heatmap.shape[:2]
    height, width = frame_size

    keypoints = []
    for k, part in enumerate(EFFICIENTPOSE_PARTS):
        y, x = np.unravel_index(int(heatmap[:, :, k].argmax()), (heat_h, heat_w))
        score = float(heatmap[y, x, k])
        if score <= options.score_threshold:
            continue
        keypoints.append(
            Keypoint(
                id=k,
                part=part,
                position=(int(width * (x + 0.5) / heat_w), int(height * (y + 0.5) / heat_h), 0),
                score=round(score, 2),
            )
        )

    if not keypoints:
        return []
    score = round(sum(kp.score for kp in keypoints) / len(keypoints), 2)
    return [BodyResult(id=0, score=score, keypoints=tuple(keypoints))]


class BodyDetector:
    """Pose estimation with whichever body model family is loaded."""

    def __init__(self, registry: ModelRegistry, buffers: BufferTracker):
        self.registry = registry
        self.buffers = buffers

    async def predict(self, image: ProcessedImage, config: DetectConfig) -> list[BodyResult] | None:
        """
        Returns:
            Detected poses (at most body.max_detected), None when no body
            model is loaded
        """
        if not config.body.enabled:
            return []
        handle: ModelHandle | None = self.registry.get('body')
        if handle is None:
            return None

        variant = handle.variant
        if variant not in DEFAULT_INPUT_SIZE:
            logger.warning(f'{handle.name}: unknown body model family')
            return []
        size = handle.spatial_size(DEFAULT_INPUT_SIZE[variant])
        mean, scale = NORMALIZATION[variant]
        tensor = prepare_input(image.frame, size, handle.input_layout, scale=scale, mean=mean)

        with self.buffers.hold(tensor):
            outputs = await handle.infer(tensor)

        frame_size = (image.height, image.width)
        self.buffers.track_all(outputs)
        try:
            if variant == 'posenet':
                poses = decode_posenet(outputs, size, frame_size, config.body)
            elif variant == 'blazepose':
                poses = decode_blazepose(outputs, frame_size)
            else:
                poses = decode_efficientpose(outputs, frame_size, config.body)
        except (ValueError, IndexError) as e:
            raise InferenceError(handle.name, f'outputs do not match the {variant} signature: {e}') from e
        finally:
            self.buffers.release_all(outputs)

        return poses[: config.body.max_detected]
