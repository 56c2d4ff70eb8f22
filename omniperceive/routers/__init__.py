"""
FastAPI routers for the perception API.

Routers:
- health: Health checks and monitoring
- detect: Face, body, hand, object and gesture detection
"""

from omniperceive.routers.detect import router as detect_router
from omniperceive.routers.health import router as health_router


__all__ = [
    'detect_router',
    'health_router',
]
