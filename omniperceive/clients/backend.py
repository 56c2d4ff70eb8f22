"""
Compute backend selection.

BackendManager owns the active InferenceRuntime. Switching is serialized by
the shared setup lock so a switch never interleaves with a model load. When
the requested backend cannot be activated the current one stays active; with
no active backend at all the manager falls back to cpu.
"""

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from omniperceive.clients.base import InferenceRuntime
from omniperceive.clients.onnx_runtime import OnnxRuntime
from omniperceive.clients.triton_runtime import TritonRuntime
from omniperceive.config.settings import Settings, get_settings
from omniperceive.core.exceptions import BackendUnavailableError


logger = logging.getLogger(__name__)

FALLBACK_BACKEND = 'cpu'

RuntimeFactory = Callable[[str], InferenceRuntime]


class BackendManager:
    """
    Holds the active backend and its runtime.

    Args:
        settings: Service settings (defaults to get_settings())
        runtime_factory: Builds a runtime for a backend name (tests inject fakes)
        lock: Setup lock shared with the model registry
    """

    def __init__(
        self,
        settings: Settings | None = None,
        runtime_factory: RuntimeFactory | None = None,
        lock: asyncio.Lock | None = None,
    ):
        self.settings = settings or get_settings()
        self._factory = runtime_factory or self._create_runtime
        self._lock = lock or asyncio.Lock()
        self._executor: ThreadPoolExecutor | None = None

        self.active: str | None = None
        self.runtime: InferenceRuntime | None = None
        self.switches = 0
        # backends that failed to activate while another one was active
        self.unavailable: set[str] = set()

    def _create_runtime(self, backend: str) -> InferenceRuntime:
        if backend == 'triton':
            return TritonRuntime(self.settings.triton_url, timeout=self.settings.triton_timeout)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.inference_workers,
                thread_name_prefix='inference',
            )
        return OnnxRuntime(backend, self._executor)

    async def _activate(self, backend: str) -> InferenceRuntime:
        runtime = self._factory(backend)
        await runtime.activate()
        return runtime

    async def ensure(self, backend: str) -> bool:
        """
        Make backend the active one.

        Returns:
            True if the active runtime changed (loaded models are now stale)

        Raises:
            BackendUnavailableError: Neither the requested backend nor the
                fallback could be activated and nothing is active
        """
        if backend == self.active and self.runtime is not None:
            return False

        async with self._lock:
            if backend == self.active and self.runtime is not None:
                return False
            if backend in self.unavailable and self.runtime is not None:
                return False

            try:
                runtime = await self._activate(backend)
            except BackendUnavailableError as e:
                if self.runtime is not None:
                    self.unavailable.add(backend)
                    logger.warning(f'{e}; keeping backend {self.active}')
                    return False
                if backend == FALLBACK_BACKEND:
                    raise
                self.unavailable.add(backend)
                logger.warning(f'{e}; falling back to {FALLBACK_BACKEND}')
                runtime = await self._activate(FALLBACK_BACKEND)
                backend = FALLBACK_BACKEND

            previous = self.runtime
            self.runtime = runtime
            self.active = backend
            self.switches += 1
            if previous is not None:
                await previous.close()

            logger.info(f'Backend active: {backend}')
            return True

    async def close(self) -> None:
        """Release the active runtime and the local thread pool."""
        if self.runtime is not None:
            await self.runtime.close()
        self.runtime = None
        self.active = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
