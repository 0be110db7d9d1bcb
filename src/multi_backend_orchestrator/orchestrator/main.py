"""CLI entrypoint for the workflow orchestrator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import tomllib
from pathlib import Path
from typing import TextIO

from pydantic import ValidationError

from multi_backend_orchestrator import __version__
from multi_backend_orchestrator.backends.factory import build_registry
from multi_backend_orchestrator.core.config import OrchestratorConfig
from multi_backend_orchestrator.workflow.errors import ConfigurationError
from multi_backend_orchestrator.workflow.executor import WorkflowExecutor
from multi_backend_orchestrator.workflow.loader import apply_defaults, find_workflow, list_workflows
from multi_backend_orchestrator.workflow.models import RunReport, StepStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

_STATUS_LABELS: dict[StepStatus, str] = {
    StepStatus.SUCCESS: "OK",
    StepStatus.SOFT_FAILURE: "FAIL (continued)",
    StepStatus.HARD_FAILURE: "FAIL",
    StepStatus.SKIPPED: "SKIP",
    StepStatus.NOT_RUN: "NOT RUN",
    StepStatus.DISCARDED: "DISCARDED",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrator",
        description="Run declarative multi-step workflows across LLM backends",
    )
    parser.add_argument(
        "--version", action="version", version=f"multi-backend-orchestrator {__version__}"
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a TOML config file (default: ./orchestrator.toml if present)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", parents=[common], help="Run a workflow")
    run.add_argument("workflow", help="Workflow name or path to a .toml file")
    run.add_argument(
        "--cwd",
        type=Path,
        default=Path("."),
        help="Working directory for backends, shell steps and edits",
    )
    run.add_argument(
        "--max-parallel",
        type=int,
        default=None,
        help="Cap on concurrently running steps",
    )
    run.add_argument("--json", action="store_true", help="Print the run report as JSON")

    subparsers.add_parser("list", parents=[common], help="List available workflows")

    validate = subparsers.add_parser(
        "validate", parents=[common], help="Check a workflow and print its execution waves"
    )
    validate.add_argument("workflow", help="Workflow name or path to a .toml file")

    subparsers.add_parser(
        "backends", parents=[common], help="List configured backends and their availability"
    )

    return parser


def _load_config(path: Path | None) -> OrchestratorConfig:
    if path is not None:
        return OrchestratorConfig.from_file(path)
    return OrchestratorConfig()


def _project_workflows_dir(config: OrchestratorConfig, cwd: Path) -> Path:
    """Relative `workflows_dir` settings belong to the project being run in."""
    if config.workflows_dir.is_absolute():
        return config.workflows_dir
    return cwd / config.workflows_dir


def print_report(report: RunReport, out: TextIO) -> None:
    """Human-readable run report."""
    print(f"Workflow: {report.workflow}", file=out)
    print("=" * 50, file=out)
    for result in report.results:
        label = _STATUS_LABELS[result.status]
        timing = f" ({result.elapsed_ms / 1000:.1f}s)" if result.status.ran else ""
        print(f"[{label}] {result.name}{timing}", file=out)
        if result.status.ran or result.status is StepStatus.SKIPPED:
            for line in result.output.splitlines():
                print(f"  {line}", file=out)
        for edit in result.edits:
            print(f"  edited: {edit.file}", file=out)
        print(file=out)
    print("=" * 50, file=out)
    if report.ok:
        print("Outcome: success", file=out)
    else:
        print(f"Outcome: failed at '{report.failed_step}': {report.error}", file=out)


def _cmd_run(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    workflow, source = find_workflow(
        args.workflow, project_dir=_project_workflows_dir(config, args.cwd)
    )
    workflow = apply_defaults(workflow, config.defaults)
    logger.info(
        "Loaded workflow",
        extra={"workflow": workflow.name, "source": source.location, "steps": len(workflow.steps)},
    )

    executor = WorkflowExecutor(
        build_registry(config),
        args.cwd.resolve(),
        max_parallel=args.max_parallel,
    )
    report = executor.run_sync(workflow)

    if args.json:
        print(json.dumps(report.to_json(), indent=2, ensure_ascii=False))
    else:
        print_report(report, sys.stdout)
    return EXIT_OK if report.ok else EXIT_FAILED


def _cmd_list(config: OrchestratorConfig) -> int:
    for source, workflow in list_workflows(project_dir=config.workflows_dir):
        description = f" - {workflow.description}" if workflow.description else ""
        print(f"{workflow.name} [{source.origin}]{description}")
    return EXIT_OK


def _cmd_validate(args: argparse.Namespace, config: OrchestratorConfig) -> int:
    workflow, _source = find_workflow(args.workflow, project_dir=config.workflows_dir)
    workflow = apply_defaults(workflow, config.defaults)
    waves = WorkflowExecutor(build_registry(config)).check(workflow)
    print(f"Workflow '{workflow.name}' is valid ({len(workflow.steps)} steps)")
    for index, wave in enumerate(waves):
        print(f"  wave {index}: {', '.join(wave)}")
    return EXIT_OK


def _cmd_backends(config: OrchestratorConfig) -> int:
    registry = build_registry(config)
    for name, backend_config in config.backends.items():
        if not backend_config.enabled:
            status = "disabled"
        elif name not in registry:
            status = "misconfigured"
        elif registry[name].is_available():
            status = "available"
        else:
            status = "not available"
        print(f"{name} ({backend_config.kind}): {status}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "max_parallel", None) is not None and args.max_parallel < 1:
        parser.error("--max-parallel must be at least 1")

    try:
        config = _load_config(args.config)
    except (ValidationError, FileNotFoundError, tomllib.TOMLDecodeError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    config.setup_logging()

    try:
        if args.command == "run":
            return _cmd_run(args, config)
        if args.command == "list":
            return _cmd_list(config)
        if args.command == "validate":
            return _cmd_validate(args, config)
        if args.command == "backends":
            return _cmd_backends(config)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    parser.error(f"Unknown command: {args.command}")
    return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
