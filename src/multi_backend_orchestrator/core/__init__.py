"""Core package initialization."""

from multi_backend_orchestrator.core.config import (
    BackendConfig,
    DefaultsConfig,
    OrchestratorConfig,
)

__all__ = [
    "BackendConfig",
    "DefaultsConfig",
    "OrchestratorConfig",
]
