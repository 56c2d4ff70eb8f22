"""
Rule-based gesture tags from face, body and hand results.

Each function is pure and returns a list of {'<source>': index, 'gesture': tag}
records in the order of its input.
"""

from collections.abc import Sequence

from omniperceive.schemas.results import BodyResult, FaceResult, HandResult


# Nose offset from the eye midpoint, relative to eye distance
FACING_CENTER_RATIO = 0.15
# Nose height between eye line (0) and mouth line (1)
HEAD_UP_RATIO = 0.35
HEAD_DOWN_RATIO = 0.65

FINGERTIPS = {'thumb': 4, 'index': 8, 'middle': 12, 'ring': 16, 'pinky': 20}


def face(faces: Sequence[FaceResult]) -> list[dict]:
    gestures = []
    for i, result in enumerate(faces):
        if len(result.landmarks) < 5:
            continue
        (lx, ly), (rx, ry), (nx, ny), (mlx, mly), (mrx, mry) = result.landmarks[:5]

        eye_distance = abs(rx - lx)
        if eye_distance > 0:
            ratio = (nx - (lx + rx) / 2) / eye_distance
            if abs(ratio) < FACING_CENTER_RATIO:
                gestures.append({'face': i, 'gesture': 'facing center'})
            else:
                # image-space: nose left of center means the subject looks to their right
                side = 'right' if ratio < 0 else 'left'
                gestures.append({'face': i, 'gesture': f'facing {side}'})

        eye_y = (ly + ry) / 2
        mouth_y = (mly + mry) / 2
        if mouth_y > eye_y:
            position = (ny - eye_y) / (mouth_y - eye_y)
            if position < HEAD_UP_RATIO:
                gestures.append({'face': i, 'gesture': 'head up'})
            elif position > HEAD_DOWN_RATIO:
                gestures.append({'face': i, 'gesture': 'head down'})
    return gestures


def body(bodies: Sequence[BodyResult]) -> list[dict]:
    gestures = []
    for i, pose in enumerate(bodies):
        nose = pose.keypoint('nose') or pose.keypoint('head')
        left_wrist = pose.keypoint('leftWrist')
        right_wrist = pose.keypoint('rightWrist')

        if nose:
            left_up = left_wrist is not None and left_wrist.position[1] < nose.position[1]
            right_up = right_wrist is not None and right_wrist.position[1] < nose.position[1]
            if left_up and right_up:
                gestures.append({'body': i, 'gesture': 'i give up'})
            elif left_up:
                gestures.append({'body': i, 'gesture': 'raise left hand'})
            elif right_up:
                gestures.append({'body': i, 'gesture': 'raise right hand'})

        left_shoulder = pose.keypoint('leftShoulder')
        right_shoulder = pose.keypoint('rightShoulder')
        if left_shoulder and right_shoulder:
            side = 'left' if left_shoulder.position[1] > right_shoulder.position[1] else 'right'
            gestures.append({'body': i, 'gesture': f'leaning {side}'})
    return gestures


def hand(hands: Sequence[HandResult]) -> list[dict]:
    gestures = []
    for i, result in enumerate(hands):
        if len(result.landmarks) <= max(FINGERTIPS.values()):
            continue
        tips = {name: result.landmarks[index] for name, index in FINGERTIPS.items()}
        # smallest z is closest to the camera, smallest y is highest
        closest = min(tips, key=lambda name: tips[name][2])
        highest = min(tips, key=lambda name: tips[name][1])
        gestures.append({'hand': i, 'gesture': f'{closest} forward'})
        gestures.append({'hand': i, 'gesture': f'{highest} up'})
    return gestures
