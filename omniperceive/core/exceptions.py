"""
Exception taxonomy for the perception pipeline.

Every error raised inside a detection call derives from PerceptionError so the
orchestrator can capture it at a single boundary and hand the caller an error
descriptor instead of an unhandled fault.
"""


class PerceptionError(Exception):
    """Base class for all pipeline errors."""


class InvalidInputError(PerceptionError):
    """Input is missing, of an unsupported type, or the backend is not usable."""


class ImageConversionError(PerceptionError):
    """Input could not be normalized into a frame tensor."""


class ModelLoadError(PerceptionError):
    """Model weights are unavailable or their signature does not match."""

    def __init__(self, model_path: str, reason: str):
        self.model_path = model_path
        self.reason = reason
        super().__init__(f'cannot load model {model_path}: {reason}')


class InferenceError(PerceptionError):
    """Runtime invocation of a loaded model failed."""

    def __init__(self, model_name: str, reason: str):
        self.model_name = model_name
        self.reason = reason
        super().__init__(f'inference failed for {model_name}: {reason}')


class BackendUnavailableError(PerceptionError):
    """Requested compute backend cannot be activated."""

    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f'backend {backend} unavailable: {reason}')
