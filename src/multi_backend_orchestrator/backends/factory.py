"""Factory for creating backends."""

import logging

from multi_backend_orchestrator.backends.command_backend import CommandBackend
from multi_backend_orchestrator.backends.ollama_backend import OllamaBackend
from multi_backend_orchestrator.backends.openai_backend import OpenAIBackend
from multi_backend_orchestrator.backends.provider import Backend
from multi_backend_orchestrator.core.config import BackendConfig, OrchestratorConfig

logger = logging.getLogger(__name__)


class BackendFactory:
    """Factory for creating backend instances."""

    @staticmethod
    def create(name: str, config: BackendConfig) -> Backend:
        """Create a backend based on configuration.

        Args:
            name: Registry name the backend is exposed under.
            config: Backend configuration specifying the adapter kind.

        Returns:
            Configured backend instance.

        Raises:
            ValueError: If the adapter kind is not supported.
        """
        logger.debug(f"Creating backend: {name} ({config.kind})")

        if config.kind == "command":
            return CommandBackend(name, config)
        elif config.kind == "openai":
            return OpenAIBackend(name, config)
        elif config.kind == "ollama":
            return OllamaBackend(name, config)
        else:
            raise ValueError(f"Unsupported backend kind: {config.kind}")


def build_registry(config: OrchestratorConfig) -> dict[str, Backend]:
    """Create every enabled backend; misconfigured ones are logged and left out."""

    registry: dict[str, Backend] = {}
    for name, backend_config in config.backends.items():
        if not backend_config.enabled:
            continue
        try:
            registry[name] = BackendFactory.create(name, backend_config)
        except ValueError as e:
            logger.warning(f"Failed to create backend {name}: {e}")
    return registry
