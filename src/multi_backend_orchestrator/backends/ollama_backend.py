"""Ollama backend - HTTP API for local models."""

import asyncio
import logging
from pathlib import Path

import requests

from multi_backend_orchestrator.backends.provider import Backend
from multi_backend_orchestrator.core.config import BackendConfig
from multi_backend_orchestrator.workflow.errors import BackendError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:11434"
DEFAULT_MODEL = "llama3.2"


class OllamaBackend(Backend):
    """Talk to an Ollama server through `POST /api/chat`."""

    def __init__(self, name: str, config: BackendConfig) -> None:
        self._name = name
        self.base_url = (config.endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self.model = config.model or DEFAULT_MODEL
        self.timeout = config.timeout or 300.0
        self.session = requests.Session()

    @property
    def name(self) -> str:
        return self._name

    def _chat(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
        }
        try:
            response = self.session.post(
                f"{self.base_url}/api/chat", json=payload, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise BackendError(self.name, BackendError.TIMEOUT, str(e)) from e
        except requests.RequestException as e:
            raise BackendError(self.name, BackendError.API_ERROR, str(e)) from e

        if not response.ok:
            raise BackendError(
                self.name,
                BackendError.API_ERROR,
                f"Ollama error {response.status_code}: {response.text}",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(self.name, BackendError.API_ERROR, "Invalid JSON response") from e

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            return ""
        return str(message.get("content") or "")

    async def query(self, prompt: str, working_directory: Path) -> str:
        return await asyncio.to_thread(self._chat, prompt)

    def is_available(self) -> bool:
        # A server, not a binary: connection failures surface when querying.
        return True
