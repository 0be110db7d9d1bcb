"""Load workflow definitions from TOML.

Lookup order for a workflow name:
- an explicit path
- `.orchestrator/workflows/<name>.toml` (project)
- `~/.config/orchestrator/workflows/<name>.toml` (user)
- workflows shipped with the package
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path

from pydantic import ValidationError

from multi_backend_orchestrator.core.config import DefaultsConfig

from .errors import ConfigurationError
from .models import Workflow, WorkflowDefaults

logger = logging.getLogger(__name__)

PROJECT_WORKFLOWS_DIR = Path(".orchestrator/workflows")
USER_WORKFLOWS_DIR = Path("~/.config/orchestrator/workflows")
BUILTIN_PACKAGE = "multi_backend_orchestrator"
BUILTIN_DIR = "builtin_workflows"


@dataclass(frozen=True, slots=True)
class WorkflowSource:
    """Where a workflow definition came from."""

    location: str
    origin: str  # "path" | "project" | "user" | "builtin"


def parse_workflow(text: str, *, source: str) -> Workflow:
    """Parse TOML text into a validated `Workflow`.

    Raises:
        ConfigurationError: Naming `source` on TOML or validation errors.
    """
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Failed to parse workflow {source}: {e}") from e

    if "name" not in data:
        data["name"] = Path(source).stem
    try:
        return Workflow.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid workflow {source}: {e}") from e


def load_workflow(path: Path) -> Workflow:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read workflow file: {path}: {e}") from e
    return parse_workflow(text, source=str(path))


def _builtin_dir() -> Traversable:
    return resources.files(BUILTIN_PACKAGE).joinpath(BUILTIN_DIR)


def _toml_name(name: str) -> str:
    return name if name.endswith(".toml") else f"{name}.toml"


def _search_dirs(project_dir: Path | None = None) -> list[tuple[Path, str]]:
    return [
        (project_dir or PROJECT_WORKFLOWS_DIR, "project"),
        (USER_WORKFLOWS_DIR.expanduser(), "user"),
    ]


def find_workflow(
    name: str, *, project_dir: Path | None = None
) -> tuple[Workflow, WorkflowSource]:
    """Resolve `name` to a workflow, project and user files shadowing builtins.

    Raises:
        ConfigurationError: If nothing matches; the message lists where we looked.
    """
    path = Path(name)
    if path.is_file():
        return load_workflow(path), WorkflowSource(location=str(path), origin="path")

    filename = _toml_name(name)
    searched: list[str] = []
    for directory, origin in _search_dirs(project_dir):
        candidate = directory / filename
        searched.append(str(candidate))
        if candidate.is_file():
            source = WorkflowSource(location=str(candidate), origin=origin)
            return load_workflow(candidate), source

    builtin = _builtin_dir().joinpath(filename)
    searched.append(f"builtin:{filename}")
    if builtin.is_file():
        text = builtin.read_text(encoding="utf-8")
        workflow = parse_workflow(text, source=f"builtin:{filename}")
        return workflow, WorkflowSource(location=f"builtin:{filename}", origin="builtin")

    raise ConfigurationError(
        f"Workflow '{name}' not found. Searched:\n" + "\n".join(f"  - {s}" for s in searched)
    )


def list_workflows(*, project_dir: Path | None = None) -> list[tuple[WorkflowSource, Workflow]]:
    """Every loadable workflow; broken files are logged and skipped."""
    found: list[tuple[WorkflowSource, Workflow]] = []
    seen: set[str] = set()

    for directory, origin in _search_dirs(project_dir):
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob("*.toml")):
            try:
                workflow = load_workflow(path)
            except ConfigurationError as e:
                logger.warning(
                    "Skipping unloadable workflow", extra={"path": str(path), "error": str(e)}
                )
                continue
            found.append((WorkflowSource(location=str(path), origin=origin), workflow))
            seen.add(path.name)

    builtin_dir = _builtin_dir()
    for entry in sorted(builtin_dir.iterdir(), key=lambda t: t.name):
        if not entry.name.endswith(".toml") or entry.name in seen:
            continue
        source = f"builtin:{entry.name}"
        found.append(
            (
                WorkflowSource(location=source, origin="builtin"),
                parse_workflow(entry.read_text(encoding="utf-8"), source=source),
            )
        )
    return found


def apply_defaults(workflow: Workflow, defaults: DefaultsConfig) -> Workflow:
    """Fill workflow defaults the file left unset from the global configuration."""
    explicit = workflow.defaults.model_fields_set
    merged = WorkflowDefaults(
        **{
            key: getattr(workflow.defaults, key) if key in explicit else getattr(defaults, key)
            for key in WorkflowDefaults.model_fields
        }
    )
    return workflow.model_copy(update={"defaults": merged})
