"""
Face pipeline: SCRFD detection, alignment, and per-face attribute models.

Pipeline:
1. SCRFD on the letterboxed frame -> boxes, scores, 5-point landmarks
2. Umeyama alignment of each face to the ArcFace template at every
   attribute model's own input size
3. Attribute models on the aligned crop:
   - age: scalar regression (x 100 = years)
   - gender: [female, male] scores, or a single male probability
   - emotion: 7-class scores
   - embedding: identity vector (L2 normalized)
   - description: combined head (gender [1], age distribution [100],
     descriptor [N]); its values take precedence over the single models
"""

import asyncio
import logging

import cv2
import numpy as np

from omniperceive.clients.base import ModelHandle
from omniperceive.config.detect import DetectConfig, FaceAttributeConfig
from omniperceive.core.exceptions import InferenceError
from omniperceive.schemas.results import FaceResult
from omniperceive.services.buffer_pool import BufferTracker
from omniperceive.services.preprocess import ProcessedImage, prepare_input
from omniperceive.services.registry import FACE_ATTRIBUTES, ModelRegistry
from omniperceive.utils.face_align import ARCFACE_SIZE, align_face
from omniperceive.utils.scrfd_decode import (
    INPUT_SIZE,
    bind_scrfd_outputs,
    decode_scrfd_outputs,
    preprocess_scrfd,
)


logger = logging.getLogger(__name__)

EMOTIONS = ('angry', 'disgust', 'fear', 'happy', 'sad', 'surprise', 'neutral')

# (mean, scale) applied to 0..255 crops per attribute model
NORMALIZATION = {
    'age': (0.0, 1.0),
    'gender': (0.0, 1.0),
    'emotion': (127.5, 1.0 / 127.5),
    'embedding': (127.5, 1.0 / 127.5),
    'description': (0.0, 1.0 / 255.0),
}

DESCRIPTION_AGE_BINS = 100


def _channels(handle: ModelHandle) -> int:
    shape = handle.input_shape
    return (shape[1] if handle.input_layout == 'NCHW' else shape[3]) or 3


def _softmax(values: np.ndarray) -> np.ndarray:
    shifted = np.exp(values - values.max())
    return shifted / shifted.sum()


def _l2_normalize(values: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(values)
    return values / norm if norm > 0 else values


# =============================================================================
# Attribute decoders
# =============================================================================
def decode_age(outputs: list[np.ndarray]) -> float:
    return round(float(outputs[0].reshape(-1)[0]) * 100, 1)


def decode_gender(outputs: list[np.ndarray], options: FaceAttributeConfig) -> tuple[str | None, float | None]:
    values = outputs[0].reshape(-1)
    if values.size == 1:
        male = float(values[0])
        gender, confidence = ('male', male) if male > 0.5 else ('female', 1.0 - male)
    else:
        index = int(values[:2].argmax())
        gender, confidence = ('female', 'male')[index], float(values[index])
    if confidence <= options.min_confidence:
        return None, None
    return gender, round(min(confidence, 0.99), 2)


def decode_emotion(outputs: list[np.ndarray], options: FaceAttributeConfig) -> tuple[dict, ...]:
    values = outputs[0].reshape(-1)[: len(EMOTIONS)].astype(np.float64)
    if values.min() < 0 or not np.isclose(values.sum(), 1.0, atol=1e-3):
        values = _softmax(values)
    ranked = sorted(
        (
            {'emotion': EMOTIONS[i], 'score': round(min(float(v), 0.99), 2)}
            for i, v in enumerate(values)
            if v > options.min_confidence
        ),
        key=lambda e: -e['score'],
    )
    return tuple(ranked[: options.max_results])


def decode_description(outputs: list[np.ndarray]) -> dict:
    """Split the combined head by output size."""
    described = {}
    for output in outputs:
        values = output.reshape(-1)
        if values.size == 1:
            score = float(values[0])
            described['gender'] = 'female' if score <= 0.5 else 'male'
            described['gender_score'] = round(min(score if score > 0.5 else 1.0 - score, 0.99), 2)
        elif values.size == DESCRIPTION_AGE_BINS:
            best = int(values.argmax())
            # interpolate towards the stronger neighbouring bin
            before = float(values[best - 1]) if best > 0 else 0.0
            after = float(values[best + 1]) if best < values.size - 1 else 0.0
            age = 10 * best - 100 * before if before > after else 10 * best + 100 * after
            described['age'] = round(age / 10, 1)
        elif values.size > 1:
            described['embedding'] = tuple(float(v) for v in _l2_normalize(values.astype(np.float64)))
    return described


class FaceDetector:
    """SCRFD face detector plus face-dependent attribute models."""

    def __init__(self, registry: ModelRegistry, buffers: BufferTracker):
        self.registry = registry
        self.buffers = buffers

    async def _detect(
        self, handle: ModelHandle, canvas: np.ndarray, config: DetectConfig
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        input_size = handle.spatial_size(INPUT_SIZE)[0]
        blob, det_scale = preprocess_scrfd(canvas, input_size)
        if handle.input_layout == 'NHWC':
            blob = np.ascontiguousarray(blob.transpose(0, 2, 3, 1))

        with self.buffers.hold(blob):
            outputs = await handle.infer(blob)

        self.buffers.track_all(outputs)
        try:
            if handle.binding is None:
                handle.binding = bind_scrfd_outputs([o.shape for o in outputs], input_size)
            return decode_scrfd_outputs(
                outputs,
                handle.binding,
                det_scale,
                input_size=input_size,
                det_thresh=config.face.min_confidence,
                nms_thresh=config.face.iou_threshold,
                max_faces=config.face.max_detected,
            )
        except (ValueError, IndexError) as e:
            raise InferenceError(handle.name, f'outputs do not match the SCRFD signature: {e}') from e
        finally:
            self.buffers.release_all(outputs)

    async def _run_attribute(
        self, attribute: str, handle: ModelHandle, canvas: np.ndarray, landmarks: np.ndarray
    ) -> list[np.ndarray]:
        height, width = handle.spatial_size(ARCFACE_SIZE)
        crop = align_face(canvas, landmarks, (height, width))
        if _channels(handle) == 1:
            crop = cv2.cvtColor(crop, cv2.COLOR_RGB2GRAY)[:, :, np.newaxis]

        mean, scale = NORMALIZATION[attribute]
        tensor = prepare_input(crop, (height, width), handle.input_layout, scale=scale, mean=mean)
        with self.buffers.hold(tensor):
            outputs = await handle.infer(tensor)
        return self.buffers.track_all(outputs)

    async def _describe(
        self, canvas: np.ndarray, landmarks: np.ndarray, config: DetectConfig
    ) -> dict:
        """Run every enabled attribute model on one face."""
        jobs = {}
        for attribute in FACE_ATTRIBUTES:
            options = getattr(config.face, attribute)
            handle = self.registry.get(attribute)
            if options.enabled and handle is not None:
                jobs[attribute] = handle

        raw = {}
        try:
            if config.async_mode:
                gathered = await asyncio.gather(
                    *(self._run_attribute(a, h, canvas, landmarks) for a, h in jobs.items()),
                    return_exceptions=True,
                )
                failures = [o for o in gathered if isinstance(o, BaseException)]
                raw = {a: o for a, o in zip(jobs, gathered, strict=True) if not isinstance(o, BaseException)}
                if failures:
                    raise failures[0]
            else:
                for attribute, handle in jobs.items():
                    raw[attribute] = await self._run_attribute(attribute, handle, canvas, landmarks)
            return self._decode_attributes(raw, jobs, config)
        finally:
            for outputs in raw.values():
                self.buffers.release_all(outputs)

    def _decode_attributes(self, raw: dict, jobs: dict, config: DetectConfig) -> dict:
        fields = {}
        attribute = None
        try:
            for attribute, outputs in raw.items():
                if attribute == 'age':
                    fields['age'] = decode_age(outputs)
                elif attribute == 'gender':
                    gender, score = decode_gender(outputs, config.face.gender)
                    if gender is not None:
                        fields['gender'], fields['gender_score'] = gender, score
                elif attribute == 'emotion':
                    fields['emotion'] = decode_emotion(outputs, config.face.emotion)
                elif attribute == 'embedding':
                    vector = _l2_normalize(outputs[0].reshape(-1).astype(np.float64))
                    fields['embedding'] = tuple(float(v) for v in vector)
            # combined head overrides the single models
            if 'description' in raw:
                attribute = 'description'
                fields.update(decode_description(raw['description']))
        except (ValueError, IndexError) as e:
            raise InferenceError(jobs[attribute].name, f'unexpected {attribute} output: {e}') from e
        return fields

    async def predict(self, image: ProcessedImage, config: DetectConfig) -> list[FaceResult] | None:
        """
        Detect faces and describe each one.

        Returns:
            Faces in descending score order, None when no face model is loaded
        """
        if not config.face.enabled:
            return []
        handle = self.registry.get('face')
        if handle is None:
            return None

        canvas = image.canvas
        boxes, scores, landmarks = await self._detect(handle, canvas, config)

        results = []
        for i, (box, score, points) in enumerate(zip(boxes, scores, landmarks, strict=True)):
            x1 = float(np.clip(box[0], 0, image.width))
            y1 = float(np.clip(box[1], 0, image.height))
            x2 = float(np.clip(box[2], 0, image.width))
            y2 = float(np.clip(box[3], 0, image.height))
            fields = await self._describe(canvas, points, config)
            results.append(
                FaceResult(
                    id=i,
                    score=round(float(score), 2),
                    box_normalized=(
                        x1 / image.width,
                        y1 / image.height,
                        (x2 - x1) / image.width,
                        (y2 - y1) / image.height,
                    ),
                    box_pixels=(int(x1), int(y1), int(x2 - x1), int(y2 - y1)),
                    landmarks=tuple((float(x), float(y)) for x, y in points),
                    **fields,
                )
            )
        return results
