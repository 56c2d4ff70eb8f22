"""
Result types produced by the perception pipelines.

All types are frozen dataclasses holding plain Python values (tuples, floats,
ints) so a returned result can be shared and serialized without copying numpy
buffers. Boxes come in two forms:

- box_normalized: (x, y, width, height) in [0, 1] relative to the frame
- box_pixels: (x, y, width, height) truncated to integer pixels
"""

from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np


Box = tuple[float, float, float, float]
PixelBox = tuple[int, int, int, int]


@dataclass(frozen=True)
class ObjectDetection:
    """One object candidate (before suppression) or final detection (after)."""

    id: int
    stride: int
    score: float
    class_index: int
    label: str
    center_normalized: tuple[float, float]
    center_pixels: tuple[int, int]
    box_normalized: Box
    box_pixels: PixelBox

    @property
    def edges(self) -> Box:
        """Normalized (x1, y1, x2, y2) corners."""
        x, y, w, h = self.box_normalized
        return (x, y, x + w, y + h)


@dataclass(frozen=True)
class FaceResult:
    id: int
    score: float
    box_normalized: Box
    box_pixels: PixelBox
    # 5-point landmarks in pixels: left eye, right eye, nose, left mouth, right mouth
    landmarks: tuple[tuple[float, float], ...]
    age: float | None = None
    gender: str | None = None
    gender_score: float | None = None
    emotion: tuple[dict[str, Any], ...] = ()
    embedding: tuple[float, ...] = ()


@dataclass(frozen=True)
class Keypoint:
    id: int
    part: str
    position: tuple[int, int, int]
    score: float
    presence: float | None = None


@dataclass(frozen=True)
class BodyResult:
    id: int
    score: float
    keypoints: tuple[Keypoint, ...]

    def keypoint(self, part: str) -> Keypoint | None:
        for kp in self.keypoints:
            if kp.part == part:
                return kp
        return None


@dataclass(frozen=True)
class HandResult:
    id: int
    score: float
    box_normalized: Box
    box_pixels: PixelBox
    # 21 points: wrist, then 4 per finger (thumb, index, middle, ring, pinky)
    landmarks: tuple[tuple[float, float, float], ...] = ()


@dataclass(frozen=True)
class Result:
    """
    Aggregated output of one detect call.

    Attributes:
        face: Face detections with their attribute records
        body: Body poses (one entry per detected person)
        hand: Hand detections with skeletons
        gesture: Gesture tags derived from face/body/hand
        object: Final object detections, descending score
        performance: Stage name -> elapsed milliseconds
        canvas: Processed display buffer (HWC uint8), not serialized
    """

    face: tuple[FaceResult, ...] = ()
    body: tuple[BodyResult, ...] = ()
    hand: tuple[HandResult, ...] = ()
    gesture: tuple[dict[str, Any], ...] = ()
    object: tuple[ObjectDetection, ...] = ()
    performance: dict[str, int] = field(default_factory=dict)
    canvas: np.ndarray | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Serializable view (the canvas buffer is left out)."""
        return {
            'face': [asdict(f) for f in self.face],
            'body': [asdict(b) for b in self.body],
            'hand': [asdict(h) for h in self.hand],
            'gesture': [dict(g) for g in self.gesture],
            'object': [asdict(o) for o in self.object],
            'performance': dict(self.performance),
        }


@dataclass(frozen=True)
class ErrorDescriptor:
    """Result-shaped error returned instead of raising."""

    error: str
    kind: str

    @classmethod
    def from_exception(cls, exc: Exception) -> 'ErrorDescriptor':
        return cls(error=str(exc), kind=type(exc).__name__)

    def to_dict(self) -> dict[str, Any]:
        return {'error': self.error, 'kind': self.kind}
