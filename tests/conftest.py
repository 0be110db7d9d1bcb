"""Test configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from multi_backend_orchestrator.backends.provider import Backend
from multi_backend_orchestrator.workflow.errors import BackendError

Reply = str | Exception | Callable[[str], str]


class FakeBackend(Backend):
    """In-memory backend that replays scripted replies.

    Each reply is returned (or raised) in order; the last one repeats once the
    script runs out.
    """

    def __init__(
        self,
        name: str,
        replies: list[Reply] | None = None,
        *,
        available: bool = True,
        delay: float = 0.0,
    ) -> None:
        self._name = name
        self.replies = list(replies or [f"{name} output"])
        self.available = available
        self.delay = delay
        self.prompts: list[str] = []
        self.active = 0
        self.peak_active = 0

    @property
    def name(self) -> str:
        return self._name

    async def query(self, prompt: str, working_directory: Path) -> str:
        self.prompts.append(prompt)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            index = min(len(self.prompts), len(self.replies)) - 1
            reply = self.replies[index]
            if isinstance(reply, Exception):
                raise reply
            if callable(reply):
                return reply(prompt)
            return reply
        finally:
            self.active -= 1

    def is_available(self) -> bool:
        return self.available


def backend_failure(name: str, message: str = "boom") -> BackendError:
    return BackendError(name, BackendError.PROCESS_ERROR, message)


class SleepRecorder:
    """Stand-in for `asyncio.sleep` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Provide a temporary working directory for steps."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Run with an empty cwd and HOME so no real config or workflows leak in."""
    home = tmp_path / "home"
    home.mkdir()
    cwd = tmp_path / "cwd"
    cwd.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(cwd)
    for key in ("ORCHESTRATOR_LOG_LEVEL", "ORCHESTRATOR_DEBUG", "OPENAI_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    return cwd
