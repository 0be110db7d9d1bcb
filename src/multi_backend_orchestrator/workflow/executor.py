"""Workflow executor: run a step graph wave by wave.

Each step moves through `pending -> ready -> running -> terminal` (see
`state_machine`). A hard failure stops new work: later waves never start,
queued steps in the current wave are reported as not run, and steps already
running are allowed to finish but their results are discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from multi_backend_orchestrator.backends.provider import Backend

from . import interpolation, output_parser, scheduler, shell
from .conditions import parse_condition
from .edits import apply_edits
from .errors import (
    BackendUnavailable,
    ConfigurationError,
    EditApplicationError,
    InterpolationError,
    OrchestratorError,
    QuorumNotMet,
)
from .models import (
    AppliedEdit,
    ResultStore,
    RunReport,
    Step,
    StepResult,
    StepStatus,
    Workflow,
)
from .retry import RetryPolicy, Sleep, run_with_retry
from .state_machine import StepState, StepTracker

logger = logging.getLogger(__name__)


def _error_kind(error: BaseException) -> str:
    return getattr(error, "kind", None) or type(error).__name__


@dataclass
class _RunState:
    """Mutable bookkeeping for one run; owned by `WorkflowExecutor.run`."""

    store: ResultStore
    tracker: StepTracker
    halted: bool = False
    failure: StepResult | None = None
    discarded: set[str] = field(default_factory=set)


class WorkflowExecutor:
    """Run workflows against a registry of backends.

    Args:
        backends: Backend registry keyed by the name steps use.
        working_directory: Directory backends, shell commands and edits run in.
        max_parallel: Optional cap overriding the workflow's own.
        command_wrapper: Wrapper used when the workflow does not set one.
        sleep: Coroutine used for retry backoff; tests inject a recorder.
    """

    def __init__(
        self,
        backends: Mapping[str, Backend],
        working_directory: Path | str = ".",
        *,
        max_parallel: int | None = None,
        command_wrapper: str | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.backends = dict(backends)
        self.working_directory = Path(working_directory)
        self.max_parallel = max_parallel
        self.command_wrapper = command_wrapper
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def check(self, workflow: Workflow) -> list[list[str]]:
        """Validate `workflow` against this executor and return its waves.

        Raises:
            ConfigurationError: On graph errors or unknown backends.
        """
        waves = scheduler.schedule(workflow.steps)
        for step in workflow.steps:
            if step.backend is not None and step.backend not in self.backends:
                raise ConfigurationError(
                    f"Step '{step.name}' uses unknown backend '{step.backend}'. "
                    f"Known backends: {sorted(self.backends)}",
                    steps=[step.name],
                )
        return waves

    def _concurrency(self, workflow: Workflow) -> int | None:
        cap = workflow.defaults.concurrency
        if self.max_parallel is not None and workflow.defaults.parallel:
            cap = self.max_parallel if cap is None else min(cap, self.max_parallel)
        return cap

    def _wrapper(self, workflow: Workflow) -> str | None:
        return workflow.defaults.command_wrapper or self.command_wrapper

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def run(self, workflow: Workflow, store: ResultStore | None = None) -> RunReport:
        """Run `workflow` to completion or to its first hard failure.

        Raises:
            ConfigurationError: Before any step runs, if the workflow is invalid.
        """
        waves = self.check(workflow)
        deps = scheduler.effective_dependencies(workflow.steps)
        state = _RunState(
            store=store if store is not None else ResultStore(),
            tracker=StepTracker([s.name for s in workflow.steps]),
        )
        cap = self._concurrency(workflow)
        semaphore = asyncio.Semaphore(cap) if cap else None

        logger.info(
            "Running workflow",
            extra={"workflow": workflow.name, "waves": len(waves), "max_parallel": cap},
        )

        for wave_index, wave in enumerate(waves):
            if state.halted:
                break
            # Every step in a wave reads the same view: results of earlier waves only.
            context = state.store.snapshot()
            for name in wave:
                state.tracker.advance(name, StepState.READY)

            if len(wave) > 1:
                logger.info(
                    "Running steps in parallel",
                    extra={"wave": wave_index, "steps": wave},
                )

            await asyncio.gather(
                *(
                    self._drive(
                        workflow, workflow.step(name), deps[name], context, state, semaphore
                    )
                    for name in wave
                )
            )

        return self._report(workflow, state)

    def run_sync(self, workflow: Workflow, store: ResultStore | None = None) -> RunReport:
        """Blocking wrapper around `run` for callers without an event loop."""
        return asyncio.run(self.run(workflow, store))

    # ------------------------------------------------------------------
    # Per-step execution
    # ------------------------------------------------------------------

    async def _drive(
        self,
        workflow: Workflow,
        step: Step,
        dependencies: list[str],
        context: Mapping[str, StepResult],
        state: _RunState,
        semaphore: asyncio.Semaphore | None,
    ) -> None:
        async with semaphore if semaphore is not None else contextlib.nullcontext():
            if state.halted:
                return
            try:
                result = await self._execute(workflow, step, dependencies, context, state.tracker)
            except Exception as e:
                logger.exception("Unexpected error while running step", extra={"step": step.name})
                result = self._crashed(step, e, state.tracker)

        if state.halted:
            state.discarded.add(step.name)
            state.tracker.advance(step.name, StepState.DISCARDED)
            logger.info(
                "Discarding result of step finished after halt", extra={"step": step.name}
            )
            return

        state.store.put(result)
        if result.status is StepStatus.HARD_FAILURE:
            state.halted = True
            state.failure = result
            logger.error(
                "Step failed; halting workflow",
                extra={"step": step.name, "error": result.error, "error_kind": result.error_kind},
            )

    @staticmethod
    def _crashed(step: Step, error: Exception, tracker: StepTracker) -> StepResult:
        """Hard failure for an error that escaped normal step handling."""
        if tracker.state(step.name) in (StepState.READY, StepState.RUNNING):
            tracker.advance(step.name, StepState.HARD_FAILURE)
        return StepResult(
            name=step.name,
            status=StepStatus.HARD_FAILURE,
            output=str(error),
            error=str(error) or type(error).__name__,
            error_kind=_error_kind(error),
        )

    async def _execute(
        self,
        workflow: Workflow,
        step: Step,
        dependencies: list[str],
        context: Mapping[str, StepResult],
        tracker: StepTracker,
    ) -> StepResult:
        started = time.monotonic()

        def finish(status: StepStatus, **kwargs: object) -> StepResult:
            tracker.advance(step.name, StepState(status.value))
            elapsed_ms = int((time.monotonic() - started) * 1000)
            result = StepResult(
                name=step.name,
                status=status,
                elapsed_ms=elapsed_ms,
                **kwargs,  # type: ignore[arg-type]
            )
            logger.info(
                "Step finished",
                extra={
                    "step": step.name,
                    "status": status.value,
                    "attempts": result.attempts,
                    "elapsed_ms": elapsed_ms,
                },
            )
            return result

        def failed(error: BaseException, *, attempts: int, hard: bool = False) -> StepResult:
            soft = step.continue_on_error and not hard
            return finish(
                StepStatus.SOFT_FAILURE if soft else StepStatus.HARD_FAILURE,
                output=str(error),
                error=str(error),
                error_kind=_error_kind(error),
                attempts=attempts,
            )

        if step.when is not None and not parse_condition(step.when).evaluate(context):
            logger.info("Condition not met; skipping step", extra={"step": step.name})
            return finish(StepStatus.SKIPPED)

        if step.min_deps_success is not None:
            decision = scheduler.evaluate_quorum(step, dependencies, context)
            if not decision.proceed:
                quorum_error = QuorumNotMet(
                    step=step.name,
                    required=decision.required,
                    succeeded=decision.succeeded,
                    failed=decision.failed,
                )
                return failed(quorum_error, attempts=0, hard=True)

        backend: Backend | None = None
        if step.backend is not None:
            backend = self.backends[step.backend]
            if not backend.is_available():
                return failed(BackendUnavailable(step.backend), attempts=0)

        tracker.advance(step.name, StepState.RUNNING)
        wrapper = self._wrapper(workflow)
        timeout = workflow.timeout_for(step)

        async def attempt() -> tuple[str, output_parser.ParsedOutput]:
            rendered = interpolation.render(step.template, context)
            if backend is None:
                text = await shell.run_shell(rendered, self.working_directory, wrapper)
            else:
                text = await backend.query(rendered, self.working_directory)
            return text, output_parser.parse(text, step.output_format)

        outcome = await run_with_retry(
            attempt,
            RetryPolicy(
                max_retries=step.retries,
                initial_delay_ms=step.retry_delay,
                timeout=timeout,
            ),
            sleep=self._sleep,
            label=step.name,
        )
        if not outcome.ok:
            assert outcome.error is not None
            return failed(outcome.error, attempts=outcome.attempts)

        text, parsed = outcome.value  # type: ignore[misc]

        applied: list[AppliedEdit] = []
        try:
            if step.apply_edits:
                applied = apply_edits(text, self.working_directory)
            if step.verify is not None:
                await self._verify(step, context, wrapper, timeout)
        except EditApplicationError as e:
            if not e.applied:
                e.applied = list(applied)
            return finish(
                StepStatus.HARD_FAILURE,
                output=text,
                error=str(e),
                error_kind=e.kind,
                attempts=outcome.attempts,
                edits=tuple(e.applied),
            )

        return finish(
            StepStatus.SUCCESS,
            output=text,
            parsed=parsed.value,
            output_format=parsed.format,
            attempts=outcome.attempts,
            edits=tuple(applied),
        )

    async def _verify(
        self,
        step: Step,
        context: Mapping[str, StepResult],
        wrapper: str | None,
        timeout: float,
    ) -> None:
        assert step.verify is not None
        try:
            command = interpolation.render(step.verify, context)
            await asyncio.wait_for(
                shell.run_shell(command, self.working_directory, wrapper), timeout=timeout
            )
        except TimeoutError as e:
            raise EditApplicationError(
                EditApplicationError.VERIFY_FAILED, f"Verify command timed out after {timeout:g}s"
            ) from e
        except (InterpolationError, OrchestratorError, OSError) as e:
            raise EditApplicationError(EditApplicationError.VERIFY_FAILED, str(e)) from e

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _report(self, workflow: Workflow, state: _RunState) -> RunReport:
        results: list[StepResult] = []
        for step in workflow.steps:
            if step.name in state.store:
                results.append(state.store[step.name])
            elif step.name in state.discarded:
                results.append(StepResult(name=step.name, status=StepStatus.DISCARDED))
            else:
                results.append(StepResult(name=step.name, status=StepStatus.NOT_RUN))

        if state.failure is not None:
            return RunReport(
                workflow=workflow.name,
                outcome="failed",
                results=results,
                failed_step=state.failure.name,
                error=state.failure.error,
                states=state.tracker.to_json(),
            )
        return RunReport(
            workflow=workflow.name,
            outcome="success",
            results=results,
            states=state.tracker.to_json(),
        )
