"""Unit tests for the workflow executor."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from conftest import FakeBackend, SleepRecorder, backend_failure

from multi_backend_orchestrator.workflow.errors import ConfigurationError
from multi_backend_orchestrator.workflow.executor import WorkflowExecutor
from multi_backend_orchestrator.workflow.models import StepStatus, Workflow


def _workflow(*steps: dict[str, object], **defaults: object) -> Workflow:
    return Workflow.model_validate({"name": "test", "defaults": defaults, "steps": list(steps)})


def _executor(
    backends: list[FakeBackend], workdir: Path, sleep: SleepRecorder, **kwargs: object
) -> WorkflowExecutor:
    return WorkflowExecutor(
        {b.name: b for b in backends}, workdir, sleep=sleep, **kwargs  # type: ignore[arg-type]
    )


def test_linear_chain_passes_outputs_downstream(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    first = FakeBackend("first", ["alpha"])
    second = FakeBackend("second", [lambda prompt: prompt.upper()])
    workflow = _workflow(
        {"name": "a", "backend": "first", "prompt": "start"},
        {"name": "b", "backend": "second", "prompt": "got {{ steps.a.output }}"},
    )

    report = _executor([first, second], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert second.prompts == ["got alpha"]
    assert report.result("b").output == "GOT ALPHA"
    assert report.states == {"a": "success", "b": "success"}


def test_quorum_met_runs_gated_step(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backends = [
        FakeBackend("r1", ["looks fine"]),
        FakeBackend("r2", [backend_failure("r2", "crashed")]),
        FakeBackend("r3", ["one nit"]),
        FakeBackend("merge", [lambda prompt: prompt]),
    ]
    workflow = _workflow(
        {"name": "r1", "backend": "r1", "prompt": "review", "continue_on_error": True},
        {"name": "r2", "backend": "r2", "prompt": "review", "continue_on_error": True},
        {"name": "r3", "backend": "r3", "prompt": "review", "continue_on_error": True},
        {
            "name": "summary",
            "backend": "merge",
            "depends_on": ["r1", "r2", "r3"],
            "min_deps_success": 2,
            "prompt": "{{ steps.r1.output }}|{{ steps.r2.output }}|{{ steps.r3.output }}",
        },
    )

    report = _executor(backends, workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert report.result("r2").status is StepStatus.SOFT_FAILURE
    assert report.result("r2").output == "r2: crashed"
    summary = report.result("summary")
    assert summary.status is StepStatus.SUCCESS
    assert summary.output == "looks fine|r2: crashed|one nit"


def test_quorum_not_met_is_hard_failure_without_attempts(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    backends = [
        FakeBackend("r1", ["ok"]),
        FakeBackend("r2", [backend_failure("r2")]),
        FakeBackend("r3", [backend_failure("r3")]),
        FakeBackend("merge"),
        FakeBackend("after"),
    ]
    workflow = _workflow(
        {"name": "r1", "backend": "r1", "prompt": "review", "continue_on_error": True},
        {"name": "r2", "backend": "r2", "prompt": "review", "continue_on_error": True},
        {"name": "r3", "backend": "r3", "prompt": "review", "continue_on_error": True},
        {
            "name": "summary",
            "backend": "merge",
            "depends_on": ["r1", "r2", "r3"],
            "min_deps_success": 2,
            "prompt": "merge",
            "continue_on_error": True,
        },
        {"name": "publish", "backend": "after", "depends_on": ["summary"], "prompt": "go"},
    )

    report = _executor(backends, workdir, sleep_recorder).run_sync(workflow)

    assert not report.ok
    assert report.failed_step == "summary"
    summary = report.result("summary")
    assert summary.status is StepStatus.HARD_FAILURE
    assert summary.error_kind == "quorum"
    assert summary.attempts == 0
    assert "1/2" in (summary.error or "")
    assert backends[3].prompts == []
    assert report.result("publish").status is StepStatus.NOT_RUN
    assert backends[4].prompts == []


def test_soft_failure_keeps_run_successful(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    flaky = FakeBackend("flaky", [backend_failure("flaky", "down")])
    steady = FakeBackend("steady", ["fine"])
    workflow = _workflow(
        {"name": "optional", "backend": "flaky", "prompt": "p", "continue_on_error": True},
        {"name": "required", "backend": "steady", "prompt": "p"},
    )

    report = _executor([flaky, steady], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert report.result("optional").status is StepStatus.SOFT_FAILURE
    assert report.result("optional").error == "flaky: down"
    assert report.result("required").status is StepStatus.SUCCESS


def test_hard_failure_stops_later_waves(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    broken = FakeBackend("broken", [backend_failure("broken", "exit 2")])
    later = FakeBackend("later")
    workflow = _workflow(
        {"name": "a", "backend": "broken", "prompt": "p"},
        {"name": "b", "backend": "later", "prompt": "p"},
    )

    report = _executor([broken, later], workdir, sleep_recorder).run_sync(workflow)

    assert report.outcome == "failed"
    assert report.failed_step == "a"
    assert report.error == "broken: exit 2"
    assert report.result("b").status is StepStatus.NOT_RUN
    assert later.prompts == []


def test_retries_use_exponential_backoff(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend(
        "flaky",
        [backend_failure("flaky"), backend_failure("flaky"), backend_failure("flaky"), "finally"],
    )
    workflow = _workflow(
        {"name": "a", "backend": "flaky", "prompt": "p", "retries": 3, "retry_delay": 1000}
    )

    report = _executor([backend], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert report.result("a").attempts == 4
    assert sleep_recorder.delays == [1.0, 2.0, 4.0]


def test_cycle_raises_before_any_step_runs(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("b")
    workflow = _workflow(
        {"name": "x", "backend": "b", "prompt": "p", "depends_on": ["y"]},
        {"name": "y", "backend": "b", "prompt": "p", "depends_on": ["x"]},
        {"name": "free", "backend": "b", "prompt": "p"},
    )

    with pytest.raises(ConfigurationError, match="Circular dependency"):
        _executor([backend], workdir, sleep_recorder).run_sync(workflow)

    assert backend.prompts == []


def test_unknown_backend_is_a_configuration_error(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    workflow = _workflow({"name": "a", "backend": "missing", "prompt": "p"})

    with pytest.raises(ConfigurationError, match="unknown backend 'missing'"):
        _executor([], workdir, sleep_recorder).run_sync(workflow)


def test_unavailable_backend(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    offline = FakeBackend("offline", available=False)
    workflow = _workflow(
        {"name": "soft", "backend": "offline", "prompt": "p", "continue_on_error": True},
        {"name": "hard", "backend": "offline", "prompt": "p"},
    )

    report = _executor([offline], workdir, sleep_recorder).run_sync(workflow)

    soft = report.result("soft")
    assert soft.status is StepStatus.SOFT_FAILURE
    assert soft.error_kind == "unavailable"
    assert soft.attempts == 0
    assert report.result("hard").status is StepStatus.HARD_FAILURE
    assert report.failed_step == "hard"
    assert offline.prompts == []


def test_interpolation_error_fails_the_step(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("b", ["plain text"])
    workflow = _workflow(
        {"name": "a", "backend": "b", "prompt": "p"},
        {"name": "b", "backend": "b", "prompt": "{{ steps.a.output.field }}"},
    )

    report = _executor([backend], workdir, sleep_recorder).run_sync(workflow)

    assert report.result("b").status is StepStatus.HARD_FAILURE
    assert report.result("b").error_kind == "interpolation"


def test_json_output_is_parsed_for_downstream_fields(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    planner = FakeBackend("planner", ['```json\n{"target": "main.py"}\n```'])
    worker = FakeBackend("worker", [lambda prompt: prompt])
    workflow = _workflow(
        {"name": "plan", "backend": "planner", "prompt": "p", "output_format": "json"},
        {"name": "work", "backend": "worker", "prompt": "edit {{ steps.plan.output.target }}"},
    )

    report = _executor([planner, worker], workdir, sleep_recorder).run_sync(workflow)

    assert report.result("plan").parsed == {"target": "main.py"}
    assert report.result("work").output == "edit main.py"


def test_parse_error_is_retried(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("b", ["not json", '{"ok": true}'])
    workflow = _workflow(
        {"name": "a", "backend": "b", "prompt": "p", "output_format": "json", "retries": 1}
    )

    report = _executor([backend], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert report.result("a").attempts == 2
    assert report.result("a").parsed == {"ok": True}


def test_parallel_cap_limits_concurrency(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("slow", ["done"], delay=0.02)
    workflow = _workflow(
        *({"name": f"s{i}", "backend": "slow", "prompt": "p", "depends_on": []} for i in range(6)),
        {"name": "tail", "backend": "slow", "prompt": "p", "depends_on": ["s0"]},
        max_parallel=2,
    )

    report = _executor([backend], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert backend.peak_active == 2


def test_parallel_false_runs_one_at_a_time(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("slow", ["done"], delay=0.01)
    workflow = _workflow(
        {"name": "a", "backend": "slow", "prompt": "p", "depends_on": []},
        {"name": "b", "backend": "slow", "prompt": "p", "depends_on": []},
        {"name": "c", "backend": "slow", "prompt": "p", "depends_on": ["a"]},
        parallel=False,
    )

    _executor([backend], workdir, sleep_recorder).run_sync(workflow)

    assert backend.peak_active == 1


def test_unbounded_wave_runs_concurrently(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("slow", ["done"], delay=0.02)
    workflow = _workflow(
        *({"name": f"s{i}", "backend": "slow", "prompt": "p", "depends_on": []} for i in range(4)),
        {"name": "z", "backend": "slow", "prompt": "p", "depends_on": ["s0"]},
    )

    _executor([backend], workdir, sleep_recorder).run_sync(workflow)

    assert backend.peak_active == 4


def test_in_flight_steps_are_discarded_after_halt(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    fast_fail = FakeBackend("fast", [backend_failure("fast")], delay=0.01)
    slow = FakeBackend("slow", ["late"], delay=0.05)
    queued = FakeBackend("queued")
    workflow = _workflow(
        {"name": "fails", "backend": "fast", "prompt": "p", "depends_on": []},
        {"name": "running", "backend": "slow", "prompt": "p", "depends_on": []},
        {"name": "waiting", "backend": "queued", "prompt": "p", "depends_on": []},
        {"name": "next", "backend": "queued", "prompt": "p", "depends_on": ["running"]},
        max_parallel=2,
    )

    report = _executor([fast_fail, slow, queued], workdir, sleep_recorder).run_sync(workflow)

    assert report.failed_step == "fails"
    assert report.result("running").status is StepStatus.DISCARDED
    assert report.result("waiting").status is StepStatus.NOT_RUN
    assert report.result("next").status is StepStatus.NOT_RUN
    assert queued.prompts == []
    assert report.states["running"] == "discarded"
    assert report.states["waiting"] == "ready"


def test_when_guard_skips_step(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    checker = FakeBackend("checker", ["all tests passed"])
    fixer = FakeBackend("fixer")
    workflow = _workflow(
        {"name": "check", "backend": "checker", "prompt": "p"},
        {
            "name": "fix",
            "backend": "fixer",
            "prompt": "p",
            "when": "steps.check.output contains 'FAILED'",
        },
    )

    report = _executor([checker, fixer], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert report.result("fix").status is StepStatus.SKIPPED
    assert report.states["fix"] == "skipped"
    assert fixer.prompts == []


def test_shell_steps_feed_backends(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    (workdir / "notes.txt").write_text("hello from disk\n", encoding="utf-8")
    echo = FakeBackend("echo", [lambda prompt: prompt])
    workflow = _workflow(
        {"name": "read", "shell": "cat notes.txt"},
        {"name": "ask", "backend": "echo", "prompt": "{{ steps.read.output }}"},
    )

    report = _executor([echo], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert report.result("ask").output == "hello from disk\n"


def test_failing_shell_step_reports_stderr(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    workflow = _workflow({"name": "bad", "shell": "echo oops >&2; exit 3"})

    report = _executor([], workdir, sleep_recorder).run_sync(workflow)

    assert report.result("bad").status is StepStatus.HARD_FAILURE
    assert report.error == "Command exited with status 3: oops"


def test_step_timeout(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    slow = FakeBackend("slow", ["late"], delay=5)
    workflow = _workflow(
        {"name": "a", "backend": "slow", "prompt": "p", "timeout": 0.05, "continue_on_error": True}
    )

    report = _executor([slow], workdir, sleep_recorder).run_sync(workflow)

    assert report.result("a").status is StepStatus.SOFT_FAILURE
    assert report.result("a").output == "Timed out after 0.05s"


def _edit_reply(old: str, new: str, file: str = "app.py") -> str:
    payload = {"edits": [{"file": file, "old": old, "new": new}]}
    return "Proposed fix:\n" + json.dumps(payload)


def test_apply_edits_and_verify(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    target = workdir / "app.py"
    target.write_text("answer = 41\n", encoding="utf-8")
    patcher = FakeBackend("patcher", [_edit_reply("answer = 41", "answer = 42")])
    workflow = _workflow(
        {
            "name": "patch",
            "backend": "patcher",
            "prompt": "fix",
            "apply_edits": True,
            "verify": "grep -q 'answer = 42' app.py",
        }
    )

    report = _executor([patcher], workdir, sleep_recorder).run_sync(workflow)

    assert report.ok
    assert target.read_text(encoding="utf-8") == "answer = 42\n"
    assert [e.file for e in report.result("patch").edits] == ["app.py"]


def test_failed_verify_is_hard_failure_and_keeps_edits(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    target = workdir / "app.py"
    target.write_text("answer = 41\n", encoding="utf-8")
    patcher = FakeBackend("patcher", [_edit_reply("answer = 41", "answer = 40")])
    workflow = _workflow(
        {
            "name": "patch",
            "backend": "patcher",
            "prompt": "fix",
            "apply_edits": True,
            "continue_on_error": True,
            "verify": "grep -q 'answer = 42' app.py",
        }
    )

    report = _executor([patcher], workdir, sleep_recorder).run_sync(workflow)

    patch = report.result("patch")
    assert patch.status is StepStatus.HARD_FAILURE
    assert patch.error_kind == "verify-failed"
    assert target.read_text(encoding="utf-8") == "answer = 40\n"
    assert len(patch.edits) == 1


def test_ambiguous_edit_is_hard_failure(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    target = workdir / "app.py"
    target.write_text("x = 1\nx = 1\n", encoding="utf-8")
    patcher = FakeBackend("patcher", [_edit_reply("x = 1", "x = 2")])
    workflow = _workflow(
        {"name": "patch", "backend": "patcher", "prompt": "fix", "apply_edits": True}
    )

    report = _executor([patcher], workdir, sleep_recorder).run_sync(workflow)

    assert report.result("patch").error_kind == "ambiguous-match"
    assert target.read_text(encoding="utf-8") == "x = 1\nx = 1\n"


def test_command_wrapper_wraps_shell_steps(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    workflow = _workflow(
        {"name": "hello", "shell": "echo inner"},
        command_wrapper="sh -c {cmd} && echo wrapped",
    )

    report = _executor([], workdir, sleep_recorder).run_sync(workflow)

    assert report.result("hello").output == "inner\nwrapped\n"


def test_to_json_report(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("b", ['{"n": 1}'])
    workflow = _workflow({"name": "a", "backend": "b", "prompt": "p", "output_format": "json"})

    data = _executor([backend], workdir, sleep_recorder).run_sync(workflow).to_json()

    assert data["outcome"] == "success"
    step = data["steps"][0]  # type: ignore[index]
    assert step["status"] == "success"
    assert step["parsed"] == {"n": 1}
    assert data["states"] == {"a": "success"}
    json.dumps(data)


def test_async_run_entry_point(workdir: Path, sleep_recorder: SleepRecorder) -> None:
    backend = FakeBackend("b", ["x"])
    workflow = _workflow({"name": "a", "backend": "b", "prompt": "p"})

    report = asyncio.run(_executor([backend], workdir, sleep_recorder).run(workflow))

    assert report.ok


def test_unreadable_edit_target_is_hard_failure(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    target = workdir / "legacy.txt"
    target.write_bytes(b"caf\xe9 foo\n")
    patcher = FakeBackend("patcher", [_edit_reply("foo", "bar", file="legacy.txt")])
    workflow = _workflow(
        {"name": "patch", "backend": "patcher", "prompt": "fix", "apply_edits": True}
    )

    report = _executor([patcher], workdir, sleep_recorder).run_sync(workflow)

    patch = report.result("patch")
    assert not report.ok
    assert patch.status is StepStatus.HARD_FAILURE
    assert patch.error_kind == "io-error"
    assert report.states["patch"] == "hard_failure"
    assert target.read_bytes() == b"caf\xe9 foo\n"


def test_unexpected_backend_error_becomes_hard_failure(
    workdir: Path, sleep_recorder: SleepRecorder
) -> None:
    broken = FakeBackend("broken", [RuntimeError("socket closed")])
    after = FakeBackend("after")
    workflow = _workflow(
        {"name": "a", "backend": "broken", "prompt": "p"},
        {"name": "b", "backend": "after", "prompt": "p"},
    )

    report = _executor([broken, after], workdir, sleep_recorder).run_sync(workflow)

    assert report.failed_step == "a"
    assert report.result("a").status is StepStatus.HARD_FAILURE
    assert report.result("a").error_kind == "RuntimeError"
    assert report.result("a").error == "socket closed"
    assert report.states["a"] == "hard_failure"
    assert report.result("b").status is StepStatus.NOT_RUN
    assert after.prompts == []
