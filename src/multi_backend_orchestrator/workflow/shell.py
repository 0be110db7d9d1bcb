"""Run shell-command steps."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from .errors import AttemptFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def wrap_command(command: str, wrapper: str | None) -> str:
    """Substitute the shell-quoted `command` for `{cmd}` in `wrapper`."""

    if not wrapper:
        return command
    return wrapper.replace("{cmd}", shlex.quote(command))


async def execute(command: str, working_directory: Path) -> CommandResult:
    """Run `command` through the system shell, killing it if cancelled."""

    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(working_directory),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


async def run_shell(command: str, working_directory: Path, wrapper: str | None = None) -> str:
    """Run a (possibly wrapped) shell command and return its stdout.

    Raises:
        AttemptFailure: On a non-zero exit, carrying stderr (or stdout if stderr
            is empty) as the detail.
    """

    full_command = wrap_command(command, wrapper)
    logger.debug("Running shell command", extra={"command": full_command})
    result = await execute(full_command, working_directory)
    if result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip()
        raise AttemptFailure(f"Command exited with status {result.returncode}: {detail}")
    return result.stdout
