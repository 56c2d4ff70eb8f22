"""
Gesture rule tests.
"""

from omniperceive.schemas.results import BodyResult, FaceResult, HandResult, Keypoint
from omniperceive.services import gesture


def make_face(landmarks):
    return FaceResult(
        id=0, score=0.9, box_normalized=(0, 0, 1, 1), box_pixels=(0, 0, 100, 100), landmarks=landmarks
    )


def make_body(points):
    keypoints = tuple(
        Keypoint(id=i, part=part, position=(x, y, 0), score=0.9)
        for i, (part, (x, y)) in enumerate(points.items())
    )
    return BodyResult(id=0, score=0.9, keypoints=keypoints)


def test_face_centered_level():
    face = make_face(((40, 50), (60, 50), (50, 60), (42, 70), (58, 70)))
    assert gesture.face([face]) == [{'face': 0, 'gesture': 'facing center'}]


def test_face_turned_and_head_up():
    face = make_face(((40, 50), (60, 50), (40, 52), (42, 70), (58, 70)))
    assert gesture.face([face]) == [
        {'face': 0, 'gesture': 'facing right'},
        {'face': 0, 'gesture': 'head up'},
    ]


def test_face_without_landmarks_skipped():
    assert gesture.face([make_face(())]) == []


def test_body_raise_left_hand_and_lean():
    body = make_body({
        'nose': (100, 100),
        'leftWrist': (80, 50),
        'rightWrist': (120, 150),
        'leftShoulder': (90, 200),
        'rightShoulder': (110, 190),
    })
    assert gesture.body([body]) == [
        {'body': 0, 'gesture': 'raise left hand'},
        {'body': 0, 'gesture': 'leaning left'},
    ]


def test_body_both_hands_up():
    body = make_body({'head': (100, 100), 'leftWrist': (80, 50), 'rightWrist': (120, 60)})
    assert gesture.body([body]) == [{'body': 0, 'gesture': 'i give up'}]


def test_hand_closest_and_highest_finger():
    landmarks = [(0.0, 100.0, 0.0)] * 21
    landmarks[4] = (0.0, 100.0, -5.0)
    landmarks[8] = (0.0, 10.0, 0.0)
    hand = HandResult(id=0, score=0.8, box_normalized=(0, 0, 1, 1), box_pixels=(0, 0, 1, 1), landmarks=tuple(landmarks))

    assert gesture.hand([hand]) == [
        {'hand': 0, 'gesture': 'thumb forward'},
        {'hand': 0, 'gesture': 'index up'},
    ]


def test_hand_without_skeleton_skipped():
    hand = HandResult(id=0, score=0.8, box_normalized=(0, 0, 1, 1), box_pixels=(0, 0, 1, 1))
    assert gesture.hand([hand]) == []
