#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the orchestrator components directly:

* load settings (`orchestrator.toml`, `ORCHESTRATOR_*` environment variables)
* build the backend registry
* declare a workflow in code and run it

The workflow collects the files changed since HEAD, asks two backends for a
review in parallel and keeps going as long as one of them answers.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Sequence

from multi_backend_orchestrator.backends.factory import build_registry
from multi_backend_orchestrator.core.config import OrchestratorConfig
from multi_backend_orchestrator.workflow.errors import ConfigurationError
from multi_backend_orchestrator.workflow.executor import WorkflowExecutor
from multi_backend_orchestrator.workflow.models import Step, Workflow, WorkflowDefaults


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a small review workflow (programmatic example)."
    )
    parser.add_argument("--repo", type=Path, default=Path("."), help="Repository to review")
    parser.add_argument(
        "--backends",
        default="claude,codex",
        help='Two comma-separated backend names, e.g. "claude,ollama"',
    )
    return parser.parse_args(argv)


def build_workflow(first: str, second: str) -> Workflow:
    prompt = "List the riskiest change in this diff, in one paragraph:\n\n{{ steps.diff.output }}"
    return Workflow(
        name="example-review",
        defaults=WorkflowDefaults(timeout=120),
        steps=[
            Step(name="diff", shell="git diff HEAD --stat"),
            Step(
                name="first",
                backend=first,
                prompt=prompt,
                depends_on=["diff"],
                continue_on_error=True,
            ),
            Step(
                name="second",
                backend=second,
                prompt=prompt,
                depends_on=["diff"],
                continue_on_error=True,
            ),
            Step(
                name="verdict",
                backend=first,
                depends_on=["first", "second"],
                min_deps_success=1,
                prompt=(
                    "Two reviews follow. Reply with one line: SHIP or HOLD, and why.\n\n"
                    "{{ steps.first.output }}\n\n{{ steps.second.output }}"
                ),
            ),
        ],
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    first, second = (name.strip() for name in args.backends.split(",", 1))

    config = OrchestratorConfig()
    config.setup_logging()

    executor = WorkflowExecutor(build_registry(config), args.repo.resolve())
    try:
        report = executor.run_sync(build_workflow(first, second))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 2

    print(json.dumps(report.to_json(), indent=2))
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
