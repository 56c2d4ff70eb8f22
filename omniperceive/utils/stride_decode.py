"""
NanoDet-style multi-stride object decoder (CPU numpy).

Turns the raw grid outputs of the object model into normalized candidates.

Model structure:
- 3 grids at strides (1, 2, 4) with base size stride * 13: 13x13, 26x26, 52x52
- per grid: a class-score tensor [1, cells, num_labels] and a regression
  feature tensor [1, cells, 4 * bins]
- output order is not stable across model variants, so tensors are matched
  by shape once (bind_outputs) and indexed directly afterwards

Box regression uses the index of the strongest bin in each of the 4 edge
groups as the offset magnitude. The bin value itself is discarded; this has
to stay exactly as is to reproduce the model's reference boxes.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from omniperceive.schemas.results import ObjectDetection
from omniperceive.utils.labels import COCO_LABELS


STRIDES = (1, 2, 4)
BASE_GRID = 13
# Enlarges boxes to compensate for the coarse bin discretization
SCALE_BOX = 2.5


@dataclass(frozen=True)
class StrideBinding:
    """Output positions of the score and feature tensors for one stride."""

    stride: int
    scores_index: int
    features_index: int


def _dim(shape: Sequence, axis: int) -> int | None:
    """Static size of one axis, None for dynamic/symbolic dims."""
    try:
        value = shape[axis]
    except IndexError:
        return None
    return value if isinstance(value, int) and value > 0 else None


def bind_outputs(
    shapes: Sequence[Sequence],
    num_labels: int = len(COCO_LABELS),
) -> dict[int, StrideBinding]:
    """
    Map each stride to its score/feature output by tensor shape.

    Args:
        shapes: Output tensor shapes in model output order (dynamic dims may be
            None or strings)
        num_labels: Size of the label set (last dim of score tensors)

    Returns:
        Dict stride -> StrideBinding; strides without a matching pair are absent
    """
    binding = {}
    for stride in STRIDES:
        cells = (stride * BASE_GRID) ** 2
        scores_index = None
        features_index = None
        for i, shape in enumerate(shapes):
            if len(shape) < 3 or _dim(shape, 1) != cells:
                continue
            last = _dim(shape, -1)
            if last == num_labels and scores_index is None:
                scores_index = i
            elif last is not None and last < num_labels and last % 4 == 0 and features_index is None:
                # one bin group per box edge
                features_index = i

        if scores_index is None or features_index is None:
            continue

        batch_scores = _dim(shapes[scores_index], 0)
        batch_features = _dim(shapes[features_index], 0)
        if batch_scores and batch_features and batch_scores != batch_features:
            continue

        binding[stride] = StrideBinding(stride, scores_index, features_index)
    return binding


def _clamp(value: float) -> float:
    return max(0.0, min(value, 1.0))


def decode_strides(
    outputs: Sequence[np.ndarray],
    binding: dict[int, StrideBinding],
    input_size: int,
    output_shape: tuple[int, int],
    min_confidence: float,
    ignore_class: int | None = 61,
    labels: Sequence[str] = COCO_LABELS,
) -> list[ObjectDetection]:
    """
    Decode raw grid outputs into object candidates.

    Args:
        outputs: Raw model outputs (model output order)
        binding: Stride bindings from bind_outputs()
        input_size: Model input spatial size (square)
        output_shape: (width, height) of the frame boxes are reported against
        min_confidence: Scores must be strictly above this
        ignore_class: 0-based class index never emitted (None disables)
        labels: Label set, indexed by class position

    Returns:
        Candidates in emission order: stride, then cell (row-major), then class
    """
    width, height = output_shape
    results = []
    next_id = 0

    for stride in STRIDES:
        bound = binding.get(stride)
        if bound is None:
            continue

        base_size = stride * BASE_GRID
        scores = np.asarray(outputs[bound.scores_index])
        features = np.asarray(outputs[bound.features_index])

        scores = scores.reshape(-1, scores.shape[-1])
        bins = features.shape[-1] // 4
        # strongest bin per edge group: [cells, 4]
        box_idx = features.reshape(-1, 4, bins).argmax(axis=2)

        mask = scores > min_confidence
        if ignore_class is not None and 0 <= ignore_class < mask.shape[1]:
            mask[:, ignore_class] = False

        cell_ids, class_ids = np.nonzero(mask)
        step = base_size / stride / input_size
        k = SCALE_BOX / stride

        for i, j in zip(cell_ids.tolist(), class_ids.tolist(), strict=True):
            cx = (0.5 + i % base_size) / base_size
            cy = (0.5 + i // base_size) / base_size
            offset = box_idx[i] * step

            x1 = _clamp(cx - k * float(offset[0]))
            y1 = _clamp(cy - k * float(offset[1]))
            x2 = _clamp(cx + k * float(offset[2]))
            y2 = _clamp(cy + k * float(offset[3]))
            box = (x1, y1, x2 - x1, y2 - y1)

            results.append(
                ObjectDetection(
                    id=next_id,
                    stride=stride,
                    score=float(scores[i, j]),
                    class_index=j + 1,
                    label=labels[j] if j < len(labels) else str(j + 1),
                    center_normalized=(cx, cy),
                    center_pixels=(int(width * cx), int(height * cy)),
                    box_normalized=box,
                    box_pixels=(
                        int(box[0] * width),
                        int(box[1] * height),
                        int(box[2] * width),
                        int(box[3] * height),
                    ),
                )
            )
            next_id += 1

    return results
