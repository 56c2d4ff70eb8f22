"""
Hand pipeline: palm detection followed by a 21-point skeleton per hand.

Detector signature (outputs matched by shape):
- boxes: [1, N, 4] normalized (x1, y1, x2, y2)
- scores: [1, N] or [1, N, 1] logits

Skeleton signature:
- landmarks: 63 values (21 x (x, y, z)) in skeleton-input pixels
- confidence: 1 value (hand presence probability)

Palm boxes are squared and enlarged before cropping since the palm only
covers part of the hand.
"""

import logging

import numpy as np

from omniperceive.clients.base import ModelHandle
from omniperceive.config.detect import DetectConfig
from omniperceive.core.exceptions import InferenceError
from omniperceive.schemas.results import HandResult
from omniperceive.services.buffer_pool import BufferTracker
from omniperceive.services.preprocess import ProcessedImage, crop_and_resize, prepare_input
from omniperceive.services.registry import ModelRegistry
from omniperceive.utils.nms import nms_indices


logger = logging.getLogger(__name__)

DETECTOR_INPUT_SIZE = 256
SKELETON_INPUT_SIZE = 224
HAND_BOX_ENLARGE = 1.65
LANDMARKS = 21


def _split_detector_outputs(outputs: list[np.ndarray]) -> tuple[np.ndarray, np.ndarray]:
    boxes_index = next((i for i, o in enumerate(outputs) if o.ndim >= 2 and o.shape[-1] == 4), None)
    if boxes_index is None:
        return np.zeros((0, 4), dtype=np.float32), np.zeros((0,), dtype=np.float32)
    boxes = outputs[boxes_index].reshape(-1, 4)
    scores = next(
        (o for i, o in enumerate(outputs) if i != boxes_index and o.size == len(boxes)),
        None,
    )
    if scores is None:
        return np.zeros((0, 4), dtype=np.float32), np.zeros((0,), dtype=np.float32)
    return boxes, scores.reshape(-1)


def decode_palms(
    outputs: list[np.ndarray],
    min_confidence: float,
    iou_threshold: float,
    max_detected: int,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Score, filter and suppress palm candidates.

    Returns:
        Tuple of:
        - boxes: [M, 4] normalized xyxy, descending score
        - scores: [M] probabilities
    """
    boxes, logits = _split_detector_outputs(outputs)
    scores = 1.0 / (1.0 + np.exp(-logits.astype(np.float64)))

    mask = scores > min_confidence
    boxes, scores = boxes[mask], scores[mask]
    if len(scores) == 0:
        return boxes, scores

    order = scores.argsort(kind='stable')[::-1]
    boxes, scores = boxes[order], scores[order]
    dets = np.hstack((boxes, scores[:, None]))
    keep = nms_indices(dets, iou_threshold)[:max_detected]
    return boxes[keep], scores[keep]


def square_box(
    box: np.ndarray,
    frame_size: tuple[int, int],
    enlarge: float = HAND_BOX_ENLARGE,
) -> tuple[float, float, float, float]:
    """Normalized xyxy palm box -> enlarged square (x, y, w, h) pixel box."""
    height, width = frame_size
    x1, y1, x2, y2 = box[0] * width, box[1] * height, box[2] * width, box[3] * height
    side = max(x2 - x1, y2 - y1) * enlarge
    cx, cy = (x1 + x2) / 2, (y1 + y2) / 2
    return (cx - side / 2, cy - side / 2, side, side)


def decode_skeleton(
    outputs: list[np.ndarray],
    crop_box: tuple[float, float, float, float],
    input_size: tuple[int, int],
    min_confidence: float,
) -> tuple[tuple[float, float, float], ...] | None:
    """Map skeleton landmarks back to frame pixels, None below min_confidence."""
    landmarks = next((o for o in outputs if o.size == LANDMARKS * 3), None)
    confidence = next((o for o in outputs if o.size == 1), None)
    if landmarks is None:
        return None
    if confidence is not None and float(confidence.reshape(-1)[0]) < min_confidence:
        return None

    x, y, w, h = crop_box
    in_h, in_w = input_size
    points = landmarks.reshape(LANDMARKS, 3)
    return tuple(
        (x + float(px) * w / in_w, y + float(py) * h / in_h, float(pz))
        for px, py, pz in points
    )


class HandDetector:
    """Palm detector plus hand skeleton model."""

    def __init__(self, registry: ModelRegistry, buffers: BufferTracker):
        self.registry = registry
        self.buffers = buffers

    async def _skeleton(
        self, handle: ModelHandle, image: ProcessedImage, crop_box: tuple, config: DetectConfig
    ) -> tuple | None:
        size = handle.spatial_size(SKELETON_INPUT_SIZE)
        crop = crop_and_resize(image.frame, crop_box, size)
        tensor = prepare_input(crop, size, handle.input_layout)
        with self.buffers.hold(tensor):
            outputs = await handle.infer(tensor)
        self.buffers.track_all(outputs)
        try:
            return decode_skeleton(outputs, crop_box, size, config.hand.min_confidence)
        except (ValueError, IndexError) as e:
            raise InferenceError(handle.name, f'unexpected skeleton output: {e}') from e
        finally:
            self.buffers.release_all(outputs)

    async def predict(self, image: ProcessedImage, config: DetectConfig) -> list[HandResult] | None:
        """
        Returns:
            Hands in descending score order, None when no hand model is loaded
        """
        if not config.hand.enabled:
            return []
        detector = self.registry.get('hand')
        if detector is None:
            return None

        size = detector.spatial_size(DETECTOR_INPUT_SIZE)
        tensor = prepare_input(image.frame, size, detector.input_layout)
        with self.buffers.hold(tensor):
            outputs = await detector.infer(tensor)

        self.buffers.track_all(outputs)
        try:
            boxes, scores = decode_palms(
                outputs,
                config.hand.min_confidence,
                config.hand.iou_threshold,
                config.hand.max_detected,
            )
        except (ValueError, IndexError) as e:
            raise InferenceError(detector.name, f'unexpected palm detector output: {e}') from e
        finally:
            self.buffers.release_all(outputs)

        skeleton = self.registry.get('hand_skeleton')
        frame_size = (image.height, image.width)
        results = []
        for box, score in zip(boxes, scores, strict=True):
            crop_box = square_box(box, frame_size)
            landmarks = ()
            if skeleton is not None:
                landmarks = await self._skeleton(skeleton, image, crop_box, config)
                if landmarks is None:
                    continue

            x1 = float(np.clip(box[0], 0, 1))
            y1 = float(np.clip(box[1], 0, 1))
            x2 = float(np.clip(box[2], 0, 1))
            y2 = float(np.clip(box[3], 0, 1))
            results.append(
                HandResult(
                    id=len(results),
                    score=round(float(score), 2),
                    box_normalized=(x1, y1, x2 - x1, y2 - y1),
                    box_pixels=(
                        int(x1 * image.width),
                        int(y1 * image.height),
                        int((x2 - x1) * image.width),
                        int((y2 - y1) * image.height),
                    ),
                    landmarks=landmarks,
                )
            )
        return results
