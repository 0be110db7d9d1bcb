"""OpenAI backend implementation."""

import asyncio
import logging
import os
from pathlib import Path

from openai import OpenAI, OpenAIError

from multi_backend_orchestrator.backends.provider import Backend
from multi_backend_orchestrator.core.config import BackendConfig
from multi_backend_orchestrator.workflow.errors import BackendError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"


class OpenAIBackend(Backend):
    """OpenAI chat completions backend."""

    def __init__(self, name: str, config: BackendConfig) -> None:
        """Initialize the OpenAI backend.

        The client is only created when an API key is present; without one the
        backend reports itself unavailable instead of failing at load time.

        Args:
            name: Registry name of the backend.
            config: Backend configuration.
        """
        self._name = name
        self.config = config
        self.model = config.model or DEFAULT_MODEL
        self.temperature = config.temperature

        api_key = os.environ.get(config.api_key_env or "OPENAI_API_KEY")
        self.client: OpenAI | None = None
        if api_key:
            self.client = OpenAI(
                api_key=api_key,
                base_url=config.endpoint,
                timeout=config.timeout,
            )
            logger.info(f"OpenAI backend {name} initialized with model: {self.model}")

    @property
    def name(self) -> str:
        return self._name

    def _complete(self, prompt: str) -> str:
        if self.client is None:
            raise BackendError(self.name, BackendError.UNAVAILABLE, "No API key configured")

        logger.debug(f"Generating completion for prompt: {prompt[:100]}...")

        kwargs: dict[str, object] = {}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                **kwargs,  # type: ignore[arg-type]
            )
        except OpenAIError as e:
            raise BackendError(self.name, BackendError.API_ERROR, str(e)) from e

        content = response.choices[0].message.content or ""
        logger.debug(f"Generated {len(content)} characters")

        return content

    async def query(self, prompt: str, working_directory: Path) -> str:
        # The SDK call blocks; keep it off the event loop.
        return await asyncio.to_thread(self._complete, prompt)

    def is_available(self) -> bool:
        return self.client is not None
