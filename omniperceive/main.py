"""
OmniPerceive API Service.

FastAPI front end for the multi-model perception orchestrator:
- Face detection with age, gender, emotion and identity embedding
- Body pose estimation (PoseNet, BlazePose, EfficientPose)
- Hand detection with 21-point skeletons
- Multi-stride object detection
- Gesture tags derived from the above

Models run locally through ONNX Runtime (cpu, cuda, tensorrt) or remotely on
a Triton Inference Server (triton).
"""

import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from omniperceive.config import get_settings
from omniperceive.core.logging import configure_logging, get_logger
from omniperceive.routers import detect_router, health_router
from omniperceive.schemas.results import ErrorDescriptor
from omniperceive.services.orchestrator import Orchestrator


# =============================================================================
# Request Context (for correlation IDs)
# =============================================================================
request_id_ctx: ContextVar[str] = ContextVar('request_id', default='-')


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_ctx.get()


# Initialize structured logging
settings = get_settings()
configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifecycle manager.

    Startup:
    - Activate the configured backend and load enabled models
    - Warm the models up with a synthetic frame

    Shutdown:
    - Release the runtime (Triton channel / local thread pool)
    """
    orchestrator: Orchestrator = app.state.orchestrator

    # =========================================================================
    # STARTUP
    # =========================================================================
    logger.info('startup_begin', phase='initialization')

    error = await orchestrator.load()
    if error is not None:
        logger.warning('models_unavailable', error=error.error, kind=error.kind)
    else:
        warmup = await orchestrator.warmup()
        if isinstance(warmup, ErrorDescriptor):
            logger.warning('warmup_failed', error=warmup.error, kind=warmup.kind)

    logger.info(
        'service_ready',
        backend=orchestrator.backend.active,
        models=sorted(orchestrator.registry.loaded()),
    )

    yield

    # =========================================================================
    # SHUTDOWN
    # =========================================================================
    logger.info('shutdown_begin', phase='cleanup')
    await orchestrator.close()
    logger.info('shutdown_complete')


# =============================================================================
# FastAPI Application Factory
# =============================================================================
def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        orchestrator: Orchestrator to serve (a default one is built from settings)
    """
    settings = get_settings()

    application = FastAPI(
        title=settings.api_title,
        description=(
            'Multi-model perception service: faces, bodies, hands, objects and '
            'gestures from a single image.'
        ),
        version=settings.api_version,
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
    )
    application.state.orchestrator = orchestrator or Orchestrator(settings=settings)

    # Performance Middleware (defined first, runs second in LIFO order)
    @application.middleware('http')
    async def performance_middleware(request: Request, call_next):
        """Reject oversized uploads, time the request, and flag slow requests."""
        start_time = time.time()
        req_id = get_request_id()

        if request.method == 'POST':
            content_length = request.headers.get('content-length')
            if content_length and int(content_length) > settings.max_file_size_bytes:
                return ORJSONResponse(
                    status_code=413,
                    content={'detail': f'File too large. Maximum: {settings.max_file_size_mb}MB'},
                )

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000
        response.headers['X-Process-Time'] = f'{duration_ms:.2f}ms'

        if duration_ms > settings.slow_request_threshold_ms:
            logger.warning(
                'slow_request',
                request_id=req_id,
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
            )

        return response

    # Global Exception Handler - include request ID for debugging
    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions with request context for debugging."""
        req_id = get_request_id()
        logger.error(
            'unhandled_exception',
            request_id=req_id,
            method=request.method,
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=True,
        )
        return ORJSONResponse(
            status_code=500,
            content={
                'detail': 'Internal server error',
                'request_id': req_id,
                'error_type': type(exc).__name__,
            },
            headers={'X-Request-ID': req_id},
        )

    # Request ID Middleware (defined last, runs first in LIFO order)
    @application.middleware('http')
    async def request_id_middleware(request: Request, call_next):
        """
        Add correlation ID (X-Request-ID) to all requests.

        If client provides X-Request-ID header, use it. Otherwise generate a new UUID.
        """
        req_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())[:8]
        request_id_ctx.set(req_id)

        response = await call_next(request)

        response.headers['X-Request-ID'] = req_id
        return response

    application.include_router(health_router)  # /health - Health checks
    application.include_router(detect_router)  # /detect - Perception pass

    return application


# Create application instance
app = create_app()
