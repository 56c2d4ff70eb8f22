"""
Greedy non-max suppression.

Shared by the object pipeline (on ObjectDetection candidates), the face
detector and the hand detector (on raw [N, 5] arrays).
"""

from collections.abc import Sequence

import numpy as np

from omniperceive.schemas.results import ObjectDetection


def nms_indices(dets: np.ndarray, iou_threshold: float) -> list[int]:
    """
    Greedy NMS on pre-sorted detections.

    Args:
        dets: [N, 5] array of (x1, y1, x2, y2, score), sorted by score descending
        iou_threshold: Boxes overlapping a kept box by IoU >= this are dropped

    Returns:
        List of kept row indices, in selection order
    """
    if len(dets) == 0:
        return []

    x1 = dets[:, 0]
    y1 = dets[:, 1]
    x2 = dets[:, 2]
    y2 = dets[:, 3]

    areas = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)
    order = np.arange(len(dets))

    keep = []
    while order.size > 0:
        i = order[0]
        keep.append(int(i))
        if order.size == 1:
            break

        xx1 = np.maximum(x1[i], x1[order[1:]])
        yy1 = np.maximum(y1[i], y1[order[1:]])
        xx2 = np.minimum(x2[i], x2[order[1:]])
        yy2 = np.minimum(y2[i], y2[order[1:]])

        w = np.maximum(0.0, xx2 - xx1)
        h = np.maximum(0.0, yy2 - yy1)
        inter = w * h
        union = areas[i] + areas[order[1:]] - inter
        ovr = np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)

        inds = np.where(ovr < iou_threshold)[0]
        order = order[inds + 1]

    return keep


def iou(a: Sequence[float], b: Sequence[float]) -> float:
    """IoU of two (x1, y1, x2, y2) boxes."""
    w = max(0.0, min(a[2], b[2]) - max(a[0], b[0]))
    h = max(0.0, min(a[3], b[3]) - max(a[1], b[1]))
    inter = w * h
    union = (a[2] - a[0]) * (a[3] - a[1]) + (b[2] - b[0]) * (b[3] - b[1]) - inter
    return inter / union if union > 0 else 0.0


def suppress(
    candidates: Sequence[ObjectDetection],
    max_results: int,
    iou_threshold: float,
    min_confidence: float,
) -> list[ObjectDetection]:
    """
    Reduce object candidates from all strides to a non-overlapping set.

    Candidates whose score is not above min_confidence are ignored. Ties keep
    their emission order (stable sort).

    Args:
        candidates: Decoded candidates, any order
        max_results: Maximum number of selections
        iou_threshold: IoU at or above which a lower-scored box is discarded
        min_confidence: Score floor

    Returns:
        Surviving candidates sorted by descending score
    """
    eligible = [c for c in candidates if c.score > min_confidence]
    if not eligible or max_results <= 0:
        return []

    ranked = sorted(eligible, key=lambda c: -c.score)
    dets = np.array([[*c.edges, c.score] for c in ranked], dtype=np.float64)
    keep = nms_indices(dets, iou_threshold)[:max_results]
    return [ranked[i] for i in keep]
