"""Error types raised by the workflow engine.

Errors are raised where they are detected. The executor is the only place that
converts them into `StepResult` records; configuration errors escape
`WorkflowExecutor.run()` before any step executes.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""

    kind: str = "error"


class ConfigurationError(OrchestratorError):
    """The workflow declaration is invalid (cycle, dangling dependency, ...)."""

    kind = "configuration"

    def __init__(self, message: str, *, steps: list[str] | None = None) -> None:
        super().__init__(message)
        self.steps = list(steps or [])


class BackendError(OrchestratorError):
    """A backend failed to produce a response."""

    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    PROCESS_ERROR = "process_error"
    API_ERROR = "api_error"

    def __init__(self, backend: str, kind: str, message: str) -> None:
        super().__init__(message)
        self.backend = backend
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.backend}: {self.args[0]}"


class BackendUnavailable(BackendError):
    """Raised before a step runs when its backend reports it is not available."""

    def __init__(self, backend: str) -> None:
        super().__init__(backend, BackendError.UNAVAILABLE, f"Backend {backend} not available")


class AttemptFailure(OrchestratorError):
    """A single attempt failed (timeout, non-zero exit, backend error, ...)."""

    kind = "attempt"


class InterpolationError(AttemptFailure):
    """A template referenced a value that does not exist."""

    kind = "interpolation"


class ParseError(AttemptFailure):
    """Backend output could not be parsed in the requested format."""

    kind = "parse"


class QuorumNotMet(OrchestratorError):
    """Fewer dependencies succeeded than `min_deps_success` requires."""

    kind = "quorum"

    def __init__(
        self, *, step: str, required: int, succeeded: int, failed: tuple[str, ...]
    ) -> None:
        super().__init__(step, required, succeeded, failed)
        self.step = step
        self.required = required
        self.succeeded = succeeded
        self.failed = tuple(failed)

    def __str__(self) -> str:
        failed = ", ".join(self.failed) or "none"
        return (
            f"Quorum not met for step '{self.step}': {self.succeeded}/{self.required} "
            f"dependencies succeeded (failed: {failed})"
        )


class EditApplicationError(OrchestratorError):
    """Applying file edits (or verifying them) failed.

    Always a hard failure for the step: edits may already be on disk.
    """

    FILE_NOT_FOUND = "file-not-found"
    TEXT_NOT_FOUND = "text-not-found"
    AMBIGUOUS_MATCH = "ambiguous-match"
    VERIFY_FAILED = "verify-failed"
    INVALID_EDITS = "invalid-edits"
    IO_ERROR = "io-error"

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        file: str | None = None,
        applied: list[object] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.file = file
        self.applied = list(applied or [])

    def __str__(self) -> str:
        return f"{self.kind}: {self.args[0]}"
