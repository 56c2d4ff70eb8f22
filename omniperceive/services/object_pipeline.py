"""
Object detection pipeline.

Runs the multi-stride object model on a frame, decodes every stride, and
suppresses overlapping candidates across strides.

Frame skipping (video_optimized): after a decode, up to skip_frames following
calls return the cached detections without touching the model. An empty
cache is never reused, so an empty frame does not suppress the next decodes.
"""

import logging
import sys

from omniperceive.clients.base import ModelHandle
from omniperceive.config.detect import DetectConfig
from omniperceive.core.exceptions import InferenceError
from omniperceive.schemas.results import ObjectDetection
from omniperceive.services.buffer_pool import BufferTracker
from omniperceive.services.preprocess import ProcessedImage, prepare_input
from omniperceive.services.registry import ModelRegistry
from omniperceive.utils.nms import suppress
from omniperceive.utils.stride_decode import bind_outputs, decode_strides


logger = logging.getLogger(__name__)

DEFAULT_INPUT_SIZE = 416

# Skip counter value that never allows a cache hit
ALWAYS_DECODE = sys.maxsize


class ObjectDetector:
    """
    Stateful object detector (one per orchestrator).

    Attributes:
        last: Final detections of the most recent decode
        skipped: Calls served from the cache since the last decode
        invocations: Number of model invocations
    """

    def __init__(self, registry: ModelRegistry, buffers: BufferTracker):
        self.registry = registry
        self.buffers = buffers
        self.last: list[ObjectDetection] = []
        self.skipped = ALWAYS_DECODE
        self.invocations = 0

    def reset(self) -> None:
        self.last = []
        self.skipped = ALWAYS_DECODE

    def _bind_observed(self, handle: ModelHandle, outputs: list) -> None:
        handle.binding = bind_outputs([o.shape for o in outputs])
        if not handle.binding:
            logger.warning(f'{handle.name}: no output matches a known stride grid')

    async def predict(self, image: ProcessedImage, config: DetectConfig) -> list[ObjectDetection] | None:
        """
        Detect objects in a frame.

        Returns:
            Final detections sorted by descending score, [] when object
            detection is disabled, None when no object model is loaded
        """
        options = config.object
        if not options.enabled:
            return []

        handle = self.registry.get('object')
        if handle is None:
            return None

        if config.video_optimized and self.skipped < options.skip_frames and self.last:
            self.skipped += 1
            return list(self.last)
        self.skipped = 0 if config.video_optimized else ALWAYS_DECODE

        if handle.binding is None:
            # declared signature; dynamic grids leave it empty
            handle.binding = bind_outputs(handle.output_shapes) or None

        size = handle.spatial_size(DEFAULT_INPUT_SIZE)
        with self.buffers.hold(prepare_input(image.frame, size, handle.input_layout)) as (tensor,):
            outputs = await handle.infer(tensor)
        self.invocations += 1

        self.buffers.track_all(outputs)
        try:
            if handle.binding is None:
                self._bind_observed(handle, outputs)
            candidates = decode_strides(
                outputs,
                handle.binding,
                input_size=size[1],
                output_shape=(image.width, image.height),
                min_confidence=options.min_confidence,
                ignore_class=options.ignore_class,
            )
        except (ValueError, IndexError) as e:
            raise InferenceError(handle.name, f'outputs do not match the stride signature: {e}') from e
        finally:
            self.buffers.release_all(outputs)

        self.last = suppress(
            candidates,
            max_results=options.max_results,
            iou_threshold=options.iou_threshold,
            min_confidence=options.min_confidence,
        )
        return list(self.last)
