"""
Health and Monitoring Router

Reports the orchestrator's backend, lifecycle state, loaded models, buffer
accounting and the latest stage timings.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from omniperceive.clients.onnx_runtime import available_backends
from omniperceive.config.settings import get_settings
from omniperceive.routers.detect import get_orchestrator
from omniperceive.services.orchestrator import Orchestrator


logger = logging.getLogger(__name__)

router = APIRouter(
    tags=['Health & Monitoring'],
)


@router.get('/health')
def health(orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)]):
    """
    Health check with service status and performance metrics.

    Returns:
    - Service status
    - Active and locally available backends
    - Loaded models per capability
    - Buffer tracker statistics
    - Latest per-stage timings (ms)
    """
    settings = get_settings()
    return {
        'status': 'healthy',
        'version': settings.api_version,
        'backend': {
            'active': orchestrator.backend.active,
            'requested': orchestrator.config.backend,
            'available': [*available_backends(), 'triton'],
            'triton_url': f'grpc://{settings.triton_url}',
        },
        'state': orchestrator.state,
        'models': orchestrator.registry.loaded(),
        'buffers': orchestrator.buffers.get_stats(),
        'performance': dict(orchestrator.performance),
    }
