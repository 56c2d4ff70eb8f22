"""
Remote Triton Inference Server backend.

Model paths resolve to Triton model names by file stem, so the same
configuration works locally ('models/nanodet.onnx') and against a Triton
model repository that serves 'nanodet'. Signatures come from the server's
model metadata instead of the file.

Features:
- single async gRPC channel with keepalive and large-message options
- semaphore backpressure on concurrent requests
- retry with exponential backoff on transient failures
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import tritonclient.grpc.aio as grpcclient_aio
from tritonclient.grpc import InferInput, InferRequestedOutput
from tritonclient.utils import InferenceServerException, np_to_triton_dtype

from omniperceive.clients.base import (
    InferenceRuntime,
    ModelHandle,
    derive_input_geometry,
    normalize_shape,
)
from omniperceive.core.exceptions import BackendUnavailableError, InferenceError, ModelLoadError


logger = logging.getLogger(__name__)


# =============================================================================
# gRPC Channel Options
# =============================================================================
GRPC_CHANNEL_OPTIONS = [
    ('grpc.keepalive_time_ms', 30000),
    ('grpc.keepalive_timeout_ms', 10000),
    ('grpc.keepalive_permit_without_calls', 1),
    # raw detector outputs for large inputs exceed the 4MB default
    ('grpc.max_send_message_length', 100 * 1024 * 1024),
    ('grpc.max_receive_message_length', 100 * 1024 * 1024),
    ('grpc.http2.min_time_between_pings_ms', 10000),
    ('grpc.http2.max_pings_without_data', 0),
]


@dataclass
class RuntimeStats:
    """Request statistics for TritonRuntime."""

    total_requests: int = 0
    failed_requests: int = 0
    retries: int = 0
    total_latency_ms: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        succeeded = self.total_requests - self.failed_requests
        if succeeded <= 0:
            return 0.0
        return self.total_latency_ms / succeeded


class TritonRuntime(InferenceRuntime):
    """
    Triton gRPC runtime.

    Args:
        url: Triton gRPC endpoint (host:port)
        timeout: Per-request client timeout in seconds
        max_concurrent: Maximum in-flight requests (backpressure)
        retries: Retry attempts per request
        client: Pre-built aio client (tests)
    """

    backend = 'triton'

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        max_concurrent: int = 64,
        retries: int = 2,
        client: grpcclient_aio.InferenceServerClient | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self._client = client or grpcclient_aio.InferenceServerClient(
            url=url,
            verbose=False,
            channel_args=GRPC_CHANNEL_OPTIONS,
        )
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.stats = RuntimeStats()

    async def activate(self) -> None:
        try:
            live = await self._client.is_server_live()
        except InferenceServerException as e:
            raise BackendUnavailableError(self.backend, f'{self.url}: {e}') from e
        if not live:
            raise BackendUnavailableError(self.backend, f'{self.url}: server is not live')
        logger.info(f'Triton server live at {self.url}')

    async def load(self, path: str) -> ModelHandle:
        name = Path(path).stem
        try:
            if not await self._client.is_model_ready(name):
                await self._client.load_model(name)
            metadata = await self._client.get_model_metadata(name, as_json=True)
        except InferenceServerException as e:
            raise ModelLoadError(path, f'triton model "{name}": {e}') from e

        inputs = metadata.get('inputs', [])
        if not inputs:
            raise ModelLoadError(path, f'triton model "{name}" declares no inputs')

        input_shape = normalize_shape(inputs[0]['shape'])
        layout, size = derive_input_geometry(path, input_shape)
        outputs = metadata.get('outputs', [])

        return ModelHandle(
            name=name,
            path=path,
            backend=self.backend,
            runtime=self,
            session=self._client,
            input_name=inputs[0]['name'],
            input_shape=input_shape,
            input_layout=layout,
            input_size=size,
            output_names=tuple(o['name'] for o in outputs),
            output_shapes=tuple(normalize_shape(o['shape']) for o in outputs),
        )

    async def infer(self, handle: ModelHandle, tensor: np.ndarray) -> list[np.ndarray]:
        tensor = np.ascontiguousarray(tensor, dtype=np.float32)
        infer_input = InferInput(handle.input_name, list(tensor.shape), np_to_triton_dtype(tensor.dtype))
        infer_input.set_data_from_numpy(tensor)
        requested = [InferRequestedOutput(name) for name in handle.output_names]

        self.stats.total_requests += 1
        start_time = time.perf_counter()
        last_error: Exception | None = None

        async with self._semaphore:
            for attempt in range(self.retries + 1):
                try:
                    result = await self._client.infer(
                        handle.name,
                        [infer_input],
                        outputs=requested,
                        client_timeout=self.timeout,
                    )
                    self.stats.total_latency_ms += (time.perf_counter() - start_time) * 1000
                    return [result.as_numpy(name) for name in handle.output_names]
                except InferenceServerException as e:
                    last_error = e
                    if attempt < self.retries:
                        self.stats.retries += 1
                        logger.debug(f'Retry {attempt + 1}/{self.retries} for {handle.name}: {e}')
                        # 10ms, 20ms, 40ms...
                        await asyncio.sleep(0.01 * (2**attempt))

        self.stats.failed_requests += 1
        raise InferenceError(handle.name, str(last_error)) from last_error

    async def close(self) -> None:
        await self._client.close()
        logger.debug(f'Closed Triton client for {self.url}')
