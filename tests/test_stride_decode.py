"""
Multi-stride object decoder tests.

Covers output binding by shape, the bin-index box regression, clamping,
emission order, and the ignored class.
"""

import random

import numpy as np
import pytest

from conftest import object_outputs
from omniperceive.utils.stride_decode import STRIDES, bind_outputs, decode_strides


SHAPES = [
    (1, 169, 80),
    (1, 169, 32),
    (1, 676, 80),
    (1, 676, 32),
    (1, 2704, 80),
    (1, 2704, 32),
]


def _decode(hits, binding=None, **kwargs):
    outputs = object_outputs(hits)
    binding = binding or bind_outputs([o.shape for o in outputs])
    options = {'input_size': 416, 'output_shape': (640, 480), 'min_confidence': 0.15}
    options.update(kwargs)
    return decode_strides(outputs, binding, **options)


# =============================================================================
# Binding
# =============================================================================
def test_bind_outputs_matches_by_shape_in_any_order():
    order = list(range(len(SHAPES)))
    random.Random(3).shuffle(order)
    shuffled = [SHAPES[i] for i in order]

    binding = bind_outputs(shuffled)

    assert set(binding) == set(STRIDES)
    for stride, bound in binding.items():
        cells = (stride * 13) ** 2
        assert shuffled[bound.scores_index] == (1, cells, 80)
        assert shuffled[bound.features_index] == (1, cells, 32)


def test_bind_outputs_skips_strides_without_a_pair():
    binding = bind_outputs([(1, 169, 80), (1, 169, 32), (1, 676, 80)])
    assert set(binding) == {1}


def test_bind_outputs_accepts_dynamic_batch():
    binding = bind_outputs([(None, 169, 80), (None, 169, 32)])
    assert binding[1].scores_index == 0
    assert binding[1].features_index == 1


def test_bind_outputs_skips_features_not_split_per_edge():
    # 6 values cannot hold one bin group per box edge
    binding = bind_outputs([(1, 169, 80), (1, 169, 6), (1, 676, 80), (1, 676, 32)])
    assert set(binding) == {2}


def test_bind_outputs_dynamic_grid_binds_nothing():
    assert bind_outputs([(1, None, 80), (1, None, 32)]) == {}


# =============================================================================
# Decode
# =============================================================================
def test_decode_single_hit_geometry():
    results = _decode([(1, 0, 0, 0.9, (2, 2, 2, 2))])

    assert len(results) == 1
    det = results[0]
    center = 0.5 / 13
    half = 2.5 * 2 * (13 / 416)
    assert det.stride == 1
    assert det.class_index == 1
    assert det.label == 'person'
    assert det.score == pytest.approx(0.9)
    assert det.center_normalized == pytest.approx((center, center))
    # left/top edges clamp to 0
    assert det.box_normalized == pytest.approx((0.0, 0.0, center + half, center + half))
    assert det.box_pixels == (0, 0, int((center + half) * 640), int((center + half) * 480))
    assert det.center_pixels == (int(640 * center), int(480 * center))


def test_decode_uses_bin_index_not_value():
    weak = object_outputs([(1, 84, 5, 0.8, (1, 1, 1, 1))])
    strong = [o.copy() for o in weak]
    strong[1] *= 10.0
    binding = bind_outputs([o.shape for o in weak])

    a = decode_strides(weak, binding, 416, (640, 480), 0.15)
    b = decode_strides(strong, binding, 416, (640, 480), 0.15)

    assert a[0].box_normalized == b[0].box_normalized


def test_decode_boxes_stay_normalized():
    hits = [(4, cell, 3, 0.6, (7, 7, 7, 7)) for cell in (0, 51, 2652, 2703)]
    hits.append((1, 168, 1, 0.4, (7, 0, 7, 0)))

    for det in _decode(hits):
        x, y, w, h = det.box_normalized
        assert 0.0 <= x <= 1.0 and 0.0 <= y <= 1.0
        assert 0.0 <= x + w <= 1.0 + 1e-9 and 0.0 <= y + h <= 1.0 + 1e-9


def test_decode_emission_order_and_ids():
    hits = [
        (2, 10, 4, 0.3, (1, 1, 1, 1)),
        (1, 20, 7, 0.3, (1, 1, 1, 1)),
        (1, 5, 9, 0.3, (1, 1, 1, 1)),
        (1, 5, 2, 0.3, (1, 1, 1, 1)),
    ]
    results = _decode(hits)

    assert [(d.stride, d.class_index) for d in results] == [(1, 3), (1, 10), (1, 8), (2, 5)]
    assert [d.id for d in results] == [0, 1, 2, 3]


def test_decode_threshold_is_strict():
    assert _decode([(1, 0, 0, 0.15, (1, 1, 1, 1))]) == []
    assert len(_decode([(1, 0, 0, 0.151, (1, 1, 1, 1))])) == 1


def test_decode_ignores_configured_class():
    hits = [(1, 0, 61, 0.9, (1, 1, 1, 1)), (1, 1, 60, 0.9, (1, 1, 1, 1))]

    assert [d.class_index for d in _decode(hits)] == [61]
    assert sorted(d.class_index for d in _decode(hits, ignore_class=None)) == [61, 62]


def test_decode_missing_stride_contributes_nothing():
    outputs = object_outputs([(1, 0, 0, 0.9, (1, 1, 1, 1)), (2, 0, 0, 0.9, (1, 1, 1, 1))])
    binding = bind_outputs([o.shape for o in outputs[:2]])

    results = decode_strides(outputs, binding, 416, (640, 480), 0.15)

    assert [d.stride for d in results] == [1]


def test_decode_empty_outputs():
    assert _decode([]) == []
    assert decode_strides([], {}, 416, (640, 480), 0.15) == []
    assert np.all(object_outputs([])[0] == 0)
