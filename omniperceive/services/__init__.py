"""
Perception services: preprocessing, model registry, per-capability
pipelines, gestures and the orchestrator that runs them per frame.
"""

from omniperceive.services.buffer_pool import BufferTracker
from omniperceive.services.orchestrator import Orchestrator
from omniperceive.services.registry import ModelRegistry


__all__ = [
    'BufferTracker',
    'ModelRegistry',
    'Orchestrator',
]
