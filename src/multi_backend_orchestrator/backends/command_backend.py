"""Backends reached by running a CLI agent as a subprocess."""

import asyncio
import json
import logging
import shutil
from pathlib import Path

from multi_backend_orchestrator.backends.provider import Backend
from multi_backend_orchestrator.core.config import BackendConfig
from multi_backend_orchestrator.workflow.errors import BackendError

logger = logging.getLogger(__name__)


def parse_codex_events(output: str) -> str:
    """Pick the agent message out of codex's JSON event stream.

    Falls back to the raw output when no completed agent message is found.
    """
    for line in output.splitlines():
        if '"item.completed"' not in line or "agent_message" not in line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        item = event.get("item") if isinstance(event, dict) else None
        text = item.get("text") if isinstance(item, dict) else None
        if isinstance(text, str):
            return text
    return output


class CommandBackend(Backend):
    """Run `command *args [--] prompt` and return stdout."""

    def __init__(self, name: str, config: BackendConfig) -> None:
        """Initialize the command backend.

        Args:
            name: Registry name of the backend.
            config: Backend configuration.

        Raises:
            ValueError: If no command is configured.
        """
        if not config.command:
            raise ValueError(f"Backend {name} needs a command")

        self._name = name
        self.command = config.command
        self.args = list(config.args)
        self.prompt_separator = config.prompt_separator
        self.skip_lines = config.skip_lines
        self.parse = config.parse

        logger.debug(f"Command backend {name} uses: {self.command} {' '.join(self.args)}")

    @property
    def name(self) -> str:
        return self._name

    def build_argv(self, prompt: str) -> list[str]:
        argv = [self.command, *self.args]
        if self.prompt_separator:
            argv.append("--")
        argv.append(prompt)
        return argv

    def parse_output(self, output: str) -> str:
        if self.parse == "codex_json":
            output = parse_codex_events(output)
        if self.skip_lines:
            output = "\n".join(output.splitlines()[self.skip_lines :])
        return output

    async def query(self, prompt: str, working_directory: Path) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_argv(prompt),
                cwd=str(working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BackendError(
                self.name, BackendError.PROCESS_ERROR, f"Failed to start: {e}"
            ) from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timeouts cancel the attempt; never leave the agent running.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise BackendError(
                self.name,
                BackendError.PROCESS_ERROR,
                f"exited with status {proc.returncode}: {message}",
            )

        return self.parse_output(stdout.decode("utf-8", errors="replace"))

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None
