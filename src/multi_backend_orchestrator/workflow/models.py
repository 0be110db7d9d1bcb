"""Workflow declarations, step results and the run report."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .conditions import parse_condition

OutputFormat = Literal["text", "json", "json_array", "jsonl"]


class Step(BaseModel):
    """A single declared unit of work.

    Exactly one of (`backend` + `prompt`) or `shell` must be set.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    backend: str | None = None
    prompt: str | None = None
    shell: str | None = None

    depends_on: list[str] = Field(default_factory=list)
    parallel: str | None = Field(
        default=None,
        description="Parallel group label; adjacent steps sharing a group run together",
    )

    timeout: float | None = Field(default=None, gt=0, description="Per-attempt timeout (s)")
    retries: int = Field(default=0, ge=0)
    retry_delay: int = Field(default=1000, ge=0, description="Initial backoff delay (ms)")

    continue_on_error: bool = False
    min_deps_success: int | None = Field(default=None, ge=1)
    output_format: OutputFormat = "text"
    apply_edits: bool = False
    verify: str | None = None
    when: str | None = None

    @field_validator("depends_on")
    @classmethod
    def _dedupe_depends_on(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @field_validator("when")
    @classmethod
    def _parse_when(cls, value: str | None) -> str | None:
        if value is not None:
            parse_condition(value)
        return value

    @model_validator(mode="after")
    def _check_exclusive_fields(self) -> Step:
        if self.shell is not None:
            if self.backend is not None or self.prompt is not None:
                raise ValueError(
                    f"Step '{self.name}': 'shell' cannot be combined with 'backend'/'prompt'"
                )
        elif self.backend is None or self.prompt is None:
            raise ValueError(f"Step '{self.name}': needs either 'backend' + 'prompt' or 'shell'")

        if self.name in self.depends_on:
            raise ValueError(f"Step '{self.name}' depends on itself")

        if self.min_deps_success is not None and self.min_deps_success > len(self.depends_on):
            raise ValueError(
                f"Step '{self.name}': min_deps_success={self.min_deps_success} exceeds "
                f"the {len(self.depends_on)} declared dependencies"
            )
        return self

    @property
    def template(self) -> str:
        """The prompt or command template, whichever this step uses."""

        return self.shell if self.shell is not None else (self.prompt or "")


class WorkflowDefaults(BaseModel):
    """Workflow-level defaults, overridable per step."""

    model_config = ConfigDict(extra="forbid")

    parallel: bool = True
    max_parallel: int | None = Field(default=None, ge=1)
    timeout: float = Field(default=300.0, gt=0)
    command_wrapper: str | None = None

    @field_validator("command_wrapper")
    @classmethod
    def _wrapper_has_placeholder(cls, value: str | None) -> str | None:
        if value is not None and "{cmd}" not in value:
            raise ValueError("command_wrapper must contain a '{cmd}' placeholder")
        return value

    @property
    def concurrency(self) -> int | None:
        """Effective parallelism cap (None = unbounded)."""

        if not self.parallel:
            return 1
        return self.max_parallel


class Workflow(BaseModel):
    """An ordered collection of steps plus defaults."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str | None = None
    defaults: WorkflowDefaults = Field(default_factory=WorkflowDefaults)
    steps: list[Step] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> Workflow:
        seen: set[str] = set()
        dupes: list[str] = []
        for step in self.steps:
            if step.name in seen and step.name not in dupes:
                dupes.append(step.name)
            seen.add(step.name)
        if dupes:
            raise ValueError(f"Duplicate step names found: {dupes}")
        return self

    def step(self, name: str) -> Step:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    def timeout_for(self, step: Step) -> float:
        return step.timeout if step.timeout is not None else self.defaults.timeout


class StepStatus(str, Enum):
    SUCCESS = "success"
    SOFT_FAILURE = "soft_failure"
    HARD_FAILURE = "hard_failure"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"
    DISCARDED = "discarded"

    @property
    def ran(self) -> bool:
        return self in {StepStatus.SUCCESS, StepStatus.SOFT_FAILURE, StepStatus.HARD_FAILURE}


@dataclass(frozen=True, slots=True)
class AppliedEdit:
    """Record of one edit written to disk."""

    file: str
    old: str
    new: str


@dataclass(frozen=True, slots=True)
class StepResult:
    """Terminal result of a step. Created once, never mutated."""

    name: str
    status: StepStatus
    output: str = ""
    parsed: Any = None
    output_format: str = "text"
    error: str | None = None
    error_kind: str | None = None
    attempts: int = 0
    elapsed_ms: int = 0
    edits: tuple[AppliedEdit, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCESS

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "name": self.name,
            "status": self.status.value,
            "output": self.output,
            "attempts": self.attempts,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.parsed is not None:
            out["output_format"] = self.output_format
            out["parsed"] = self.parsed
        if self.error is not None:
            out["error"] = self.error
            out["error_kind"] = self.error_kind
        if self.edits:
            out["edits"] = [{"file": e.file, "old": e.old, "new": e.new} for e in self.edits]
        return out


class ResultStore(Mapping[str, StepResult]):
    """Append-only step name -> StepResult mapping for a single run.

    Each key is written exactly once. Readers take a `snapshot()` so a wave only
    ever sees results written by earlier waves.
    """

    def __init__(self) -> None:
        self._results: dict[str, StepResult] = {}

    def put(self, result: StepResult) -> None:
        if result.name in self._results:
            raise KeyError(f"Result for step '{result.name}' already recorded")
        self._results[result.name] = result

    def snapshot(self) -> Mapping[str, StepResult]:
        return MappingProxyType(dict(self._results))

    def __getitem__(self, name: str) -> StepResult:
        return self._results[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)


@dataclass(frozen=True, slots=True)
class RunReport:
    """Outcome of one workflow run, consumed by the CLI/formatting layer."""

    workflow: str
    outcome: Literal["success", "failed"]
    results: list[StepResult] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    states: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == "success"

    def result(self, name: str) -> StepResult:
        for r in self.results:
            if r.name == name:
                return r
        raise KeyError(name)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "workflow": self.workflow,
            "outcome": self.outcome,
            "steps": [r.to_json() for r in self.results],
            "states": dict(self.states),
        }
        if self.failed_step is not None:
            out["failed_step"] = self.failed_step
            out["error"] = self.error
        return out
