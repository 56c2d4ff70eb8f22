"""
SCRFD face detection post-processor (CPU numpy).

Decodes raw SCRFD output tensors into boxes, scores, and 5-point landmarks.
Handles anchor generation, distance-to-bbox/kps decoding, and NMS.

SCRFD architecture:
- 3-level FPN with strides [8, 16, 32]
- 2 anchors per position at each stride
- 9 output tensors: score, bbox and kps per stride

Exported graphs name their outputs inconsistently, so outputs are bound to
(stride, role) by shape once per model: anchors = (input_size / stride)^2 * 2,
last dim 1 = score, 4 = bbox, 10 = kps.

Reference: InsightFace SCRFD (https://github.com/deepinsight/insightface)
"""

from collections.abc import Sequence
from dataclasses import dataclass

import cv2
import numpy as np

from omniperceive.utils.nms import nms_indices


FPN_STRIDES = (8, 16, 32)
NUM_ANCHORS = 2
INPUT_SIZE = 640


@dataclass(frozen=True)
class ScrfdBinding:
    stride: int
    score_index: int
    bbox_index: int
    kps_index: int | None


def bind_scrfd_outputs(shapes: Sequence[Sequence], input_size: int = INPUT_SIZE) -> dict[int, ScrfdBinding]:
    """
    Bind SCRFD outputs to strides by shape.

    Args:
        shapes: Output shapes in model output order
        input_size: Square model input size

    Returns:
        Dict stride -> ScrfdBinding for strides whose score and bbox outputs exist
    """
    binding = {}
    for stride in FPN_STRIDES:
        anchors = (input_size // stride) ** 2 * NUM_ANCHORS
        roles: dict[int, int] = {}
        for i, shape in enumerate(shapes):
            dims = [d for d in shape if isinstance(d, int) and d > 0]
            if len(dims) < 2 or dims[-2] != anchors:
                continue
            roles.setdefault(dims[-1], i)
        if 1 in roles and 4 in roles:
            binding[stride] = ScrfdBinding(stride, roles[1], roles[4], roles.get(10))
    return binding


def _generate_anchors(height: int, width: int, stride: int) -> np.ndarray:
    """
    Generate anchor centers for one FPN level.

    Returns:
        Anchor centers [N*NUM_ANCHORS, 2] in pixel coordinates
    """
    anchor_centers = np.stack(np.mgrid[:height, :width][::-1], axis=-1).astype(np.float32)
    anchor_centers = (anchor_centers * stride).reshape(-1, 2)
    if NUM_ANCHORS > 1:
        anchor_centers = np.stack([anchor_centers] * NUM_ANCHORS, axis=1).reshape(-1, 2)
    return anchor_centers


def _distance2bbox(points: np.ndarray, distance: np.ndarray) -> np.ndarray:
    """
    Decode distance predictions to bounding boxes.

    SCRFD predicts (left, top, right, bottom) distances from the anchor center.

    Args:
        points: [N, 2] anchor centers (x, y)
        distance: [N, 4] predicted distances (left, top, right, bottom)

    Returns:
        [N, 4] boxes in xyxy format
    """
    x1 = points[:, 0] - distance[:, 0]
    y1 = points[:, 1] - distance[:, 1]
    x2 = points[:, 0] + distance[:, 2]
    y2 = points[:, 1] + distance[:, 3]
    return np.stack([x1, y1, x2, y2], axis=-1)


def _distance2kps(points: np.ndarray, distance: np.ndarray) -> np.ndarray:
    """
    Decode distance predictions to keypoints.

    SCRFD predicts (dx, dy) offsets from the anchor center for each of 5 landmarks.

    Args:
        points: [N, 2] anchor centers (x, y)
        distance: [N, 10] predicted offsets (5 landmarks x 2 coords)

    Returns:
        [N, 5, 2] landmark coordinates
    """
    kps = np.zeros((len(points), 5, 2), dtype=np.float32)
    for i in range(5):
        kps[:, i, 0] = points[:, 0] + distance[:, i * 2]
        kps[:, i, 1] = points[:, 1] + distance[:, i * 2 + 1]
    return kps


def decode_scrfd_outputs(
    outputs: Sequence[np.ndarray],
    binding: dict[int, ScrfdBinding],
    det_scale: float,
    input_size: int = INPUT_SIZE,
    det_thresh: float = 0.5,
    nms_thresh: float = 0.4,
    max_faces: int = 128,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decode SCRFD raw outputs into boxes, scores, and landmarks.

    Args:
        outputs: Raw outputs in model output order
        binding: Stride bindings from bind_scrfd_outputs()
        det_scale: Scale used when resizing the frame to model input;
            coordinates are divided by it to get frame coordinates
        input_size: Model input size
        det_thresh: Minimum confidence threshold
        nms_thresh: NMS IoU threshold
        max_faces: Maximum number of faces to return

    Returns:
        Tuple of:
        - boxes: [M, 4] xyxy in frame pixels
        - scores: [M]
        - landmarks: [M, 5, 2] in frame pixels (zeros when the model has no kps head)
    """
    all_scores = []
    all_bboxes = []
    all_kpss = []

    for stride in FPN_STRIDES:
        bound = binding.get(stride)
        if bound is None:
            continue

        h = w = input_size // stride
        scores = np.asarray(outputs[bound.score_index]).reshape(-1)
        bbox_preds = np.asarray(outputs[bound.bbox_index]).reshape(-1, 4) * stride
        if bound.kps_index is not None:
            kps_preds = np.asarray(outputs[bound.kps_index]).reshape(-1, 10) * stride
        else:
            kps_preds = None

        anchor_centers = _generate_anchors(h, w, stride)

        pos_inds = np.where(scores >= det_thresh)[0]
        if len(pos_inds) == 0:
            continue

        pos_anchors = anchor_centers[pos_inds]
        all_scores.append(scores[pos_inds])
        all_bboxes.append(_distance2bbox(pos_anchors, bbox_preds[pos_inds]))
        if kps_preds is not None:
            all_kpss.append(_distance2kps(pos_anchors, kps_preds[pos_inds]))
        else:
            all_kpss.append(np.zeros((len(pos_inds), 5, 2), dtype=np.float32))

    if not all_scores:
        return (
            np.zeros((0, 4), dtype=np.float32),
            np.zeros((0,), dtype=np.float32),
            np.zeros((0, 5, 2), dtype=np.float32),
        )

    scores = np.concatenate(all_scores)
    bboxes = np.concatenate(all_bboxes) / det_scale
    kpss = np.concatenate(all_kpss) / det_scale

    order = scores.argsort(kind='stable')[::-1]
    scores = scores[order]
    bboxes = bboxes[order]
    kpss = kpss[order]

    pre_det = np.hstack((bboxes, scores[:, None])).astype(np.float32)
    keep = nms_indices(pre_det, nms_thresh)[:max_faces]

    return bboxes[keep], scores[keep], kpss[keep]


def preprocess_scrfd(img: np.ndarray, input_size: int = INPUT_SIZE) -> tuple[np.ndarray, float]:
    """
    Preprocess an RGB frame for SCRFD inference.

    Letterbox resize to input_size keeping aspect ratio (top-left aligned),
    pad with zeros, normalize with mean=127.5, std=128.

    Args:
        img: RGB uint8 frame, shape [H, W, 3]
        input_size: Model input size

    Returns:
        Tuple of:
        - blob: [1, 3, input_size, input_size] FP32 normalized
        - det_scale: Scale factor for inverse transform
    """
    im_ratio = float(img.shape[0]) / img.shape[1]

    if im_ratio > 1.0:
        new_height = input_size
        new_width = max(1, int(new_height / im_ratio))
    else:
        new_width = input_size
        new_height = max(1, int(new_width * im_ratio))

    det_scale = float(new_height) / img.shape[0]
    resized = cv2.resize(img, (new_width, new_height))

    det_img = np.zeros((input_size, input_size, 3), dtype=np.uint8)
    det_img[:new_height, :new_width, :] = resized

    blob = cv2.dnn.blobFromImage(
        det_img, 1.0 / 128.0, (input_size, input_size), (127.5, 127.5, 127.5), swapRB=False
    )
    return blob, det_scale
