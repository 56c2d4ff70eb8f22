"""
Body pose tests: the three model families and the pipeline selection by path.
"""

import asyncio

import numpy as np
import pytest
from conftest import FakeModel, FakeRuntime

from omniperceive.config.detect import BodyConfig
from omniperceive.config.settings import Settings
from omniperceive.schemas.results import ErrorDescriptor
from omniperceive.services.body_pipeline import (
    BLAZEPOSE_FULL,
    BLAZEPOSE_UPPER,
    decode_blazepose,
    decode_efficientpose,
    decode_posenet,
)
from omniperceive.services.orchestrator import Orchestrator


def blazepose_output(size=195):
    values = np.zeros((1, size), dtype=np.float32)
    values[0, :5] = (127.5, 255.0, 0.0, 0.0, 0.0)
    return values


def posenet_outputs(peak=(2, 3), logit=10.0):
    heatmap = np.full((1, 9, 9, 17), -10.0, dtype=np.float32)
    heatmap[0, peak[0], peak[1], :] = logit
    offsets = np.zeros((1, 9, 9, 34), dtype=np.float32)
    offsets[0, peak[0], peak[1], 0] = 4.0  # nose dy
    offsets[0, peak[0], peak[1], 17] = -2.0  # nose dx
    return [offsets, heatmap]


# =============================================================================
# BlazePose
# =============================================================================
def test_blazepose_full_point_mapping():
    poses = decode_blazepose([blazepose_output()], frame_size=(480, 640))

    assert len(poses) == 1
    pose = poses[0]
    assert len(pose.keypoints) == len(BLAZEPOSE_FULL) == 39
    nose = pose.keypoints[0]
    assert nose.part == 'nose'
    assert nose.position == (320, 480, 0)
    assert nose.score == 0.5
    assert nose.presence == 0.5
    assert pose.score == 0.5


def test_blazepose_upper_body_variant():
    poses = decode_blazepose([np.zeros((1, 1)), blazepose_output(155)], frame_size=(480, 640))
    assert len(poses[0].keypoints) == len(BLAZEPOSE_UPPER) == 31
    assert poses[0].keypoints[-1].part == 'rightHand'


def test_blazepose_visibility_logit():
    values = blazepose_output()
    values[0, 3] = 4.0
    pose = decode_blazepose([values], frame_size=(255, 255))[0]
    assert pose.keypoints[0].score == 0.99
    assert pose.score == 0.99


def test_blazepose_unknown_signature():
    assert decode_blazepose([np.zeros((1, 10))], frame_size=(10, 10)) == []


# =============================================================================
# PoseNet
# =============================================================================
def test_posenet_single_pose():
    poses = decode_posenet(posenet_outputs(), (257, 257), (514, 257), BodyConfig())

    assert len(poses) == 1
    nose = poses[0].keypoints[0]
    assert nose.position == (46, 72, 0)
    assert nose.score == 1.0
    assert poses[0].score == 1.0
    assert len(poses[0].keypoints) == 17


def test_posenet_below_threshold():
    poses = decode_posenet(posenet_outputs(logit=-10.0), (257, 257), (257, 257), BodyConfig())
    assert poses == []


# =============================================================================
# EfficientPose
# =============================================================================
def test_efficientpose_peaks():
    heatmap = np.zeros((1, 8, 8, 16), dtype=np.float32)
    heatmap[0, 1, 2, 0] = 0.8
    heatmap[0, 0, 0, 1] = 0.2

    poses = decode_efficientpose([heatmap], frame_size=(80, 160), options=BodyConfig())

    assert len(poses) == 1
    (head,) = poses[0].keypoints
    assert head.part == 'head'
    assert head.position == (50, 15, 0)
    assert poses[0].score == 0.8


def test_efficientpose_nothing_above_threshold():
    heatmap = np.zeros((1, 8, 8, 16), dtype=np.float32)
    assert decode_efficientpose([heatmap], frame_size=(80, 160), options=BodyConfig()) == []


# =============================================================================
# Pipeline
# =============================================================================
@pytest.mark.parametrize(
    'model_path, shape, outputs, parts',
    [
        ('blazepose.onnx', (1, 256, 256, 3), lambda _: [blazepose_output()], 39),
        ('posenet.onnx', (1, 257, 257, 3), lambda _: posenet_outputs(), 17),
    ],
)
def test_body_variant_selected_by_path(settings, model_path, shape, outputs, parts):
    runtime = FakeRuntime({model_path.split('.')[0]: FakeModel(shape, outputs)})
    orchestrator = Orchestrator(
        {
            'face': {'enabled': False},
            'hand': {'enabled': False},
            'body': {'modelPath': model_path},
        },
        settings=settings,
        runtime_factory=lambda b: runtime,
    )

    result = asyncio.run(orchestrator.detect(np.zeros((480, 640, 3), dtype=np.uint8)))

    assert len(result.body) == 1
    assert len(result.body[0].keypoints) == parts
    assert runtime.inputs[model_path.split('.')[0]] == [shape]
    assert orchestrator.registry.body_variant == model_path.split('.')[0]


def body_orchestrator(settings, runtime, model_path):
    return Orchestrator(
        {
            'face': {'enabled': False},
            'hand': {'enabled': False},
            'object': {'enabled': False},
            'body': {'modelPath': model_path},
        },
        settings=settings,
        runtime_factory=lambda b: runtime,
    )


def test_body_variant_ignores_model_directory():
    settings = Settings(default_backend='cpu', model_base_path='models/posenet-pack', json_logs=False)
    runtime = FakeRuntime({'blazepose': FakeModel((1, 256, 256, 3), lambda _: [blazepose_output()])})
    orchestrator = body_orchestrator(settings, runtime, 'blazepose.onnx')

    result = asyncio.run(orchestrator.detect(np.zeros((480, 640, 3), dtype=np.uint8)))

    assert runtime.loads == ['models/posenet-pack/blazepose.onnx']
    assert orchestrator.registry.body_variant == 'blazepose'
    assert len(result.body[0].keypoints) == 39


def test_mismatched_posenet_grids_are_an_inference_error(settings):
    def outputs(_):
        heatmap = np.full((1, 9, 9, 17), -10.0, dtype=np.float32)
        heatmap[0, 8, 8, :] = 10.0
        return [np.zeros((1, 5, 5, 34), dtype=np.float32), heatmap]

    runtime = FakeRuntime({'posenet': FakeModel((1, 257, 257, 3), outputs)})
    orchestrator = body_orchestrator(settings, runtime, 'posenet.onnx')

    outcome = asyncio.run(orchestrator.detect(np.zeros((480, 640, 3), dtype=np.uint8)))

    assert isinstance(outcome, ErrorDescriptor)
    assert outcome.kind == 'InferenceError'
    assert 'posenet' in outcome.error
    assert orchestrator.buffers.live_count == 0
