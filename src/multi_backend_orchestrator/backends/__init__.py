"""Backends package initialization."""

from multi_backend_orchestrator.backends.factory import BackendFactory, build_registry
from multi_backend_orchestrator.backends.provider import Backend

__all__ = [
    "Backend",
    "BackendFactory",
    "build_registry",
]
