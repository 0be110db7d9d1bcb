"""Dependency graph, execution waves and quorum gating.

The graph is derived once from the declared steps. When no step declares
`depends_on`, declaration order becomes an implicit chain: consecutive steps
sharing a `parallel` label form one stage, and each stage depends on every step
of the stage before it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .conditions import parse_condition
from .errors import ConfigurationError
from .interpolation import referenced_steps
from .models import Step, StepResult


def _implicit_stages(steps: list[Step]) -> list[list[str]]:
    stages: list[list[str]] = []
    current_group: str | None = None
    for step in steps:
        if stages and step.parallel is not None and step.parallel == current_group:
            stages[-1].append(step.name)
        else:
            stages.append([step.name])
        current_group = step.parallel
    return stages


def effective_dependencies(steps: list[Step]) -> dict[str, list[str]]:
    """Map each step to the steps it must wait for."""

    # An explicit `depends_on`, even an empty one, opts the workflow out of the implicit chain.
    if any("depends_on" in step.model_fields_set for step in steps):
        return {step.name: list(step.depends_on) for step in steps}

    deps: dict[str, list[str]] = {}
    previous: list[str] = []
    for stage in _implicit_stages(steps):
        for name in stage:
            deps[name] = list(previous)
        previous = stage
    return deps


def _find_cycle(deps: dict[str, list[str]], order: list[str]) -> list[str] | None:
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(name: str) -> list[str] | None:
        if name in on_path:
            start = visiting.index(name)
            return visiting[start:] + [name]
        if name in done:
            return None
        visiting.append(name)
        on_path.add(name)
        for dep in deps.get(name, []):
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        on_path.discard(name)
        done.add(name)
        return None

    for name in order:
        cycle = visit(name)
        if cycle:
            return cycle
    return None


def _ancestors(name: str, deps: dict[str, list[str]]) -> set[str]:
    seen: set[str] = set()
    pending = list(deps[name])
    while pending:
        current = pending.pop()
        if current not in seen:
            seen.add(current)
            pending.extend(deps[current])
    return seen


def validate(steps: list[Step]) -> dict[str, list[str]]:
    """Check the declaration and return the effective dependency map.

    Raises:
        ConfigurationError: Duplicate names, dangling or cyclic dependencies,
            `when` guards on unknown steps or on steps that are not
            transitive dependencies.
    """

    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate step names found: {dupes}", steps=dupes)

    known = set(names)
    deps = effective_dependencies(steps)

    for step in steps:
        for dep in deps[step.name]:
            if dep not in known:
                raise ConfigurationError(
                    f"Step '{step.name}' depends on unknown step '{dep}'. "
                    f"Known steps: {sorted(known)}",
                    steps=[step.name, dep],
                )
        if step.when is not None:
            condition = parse_condition(step.when)
            if condition.step not in known:
                raise ConfigurationError(
                    f"Step '{step.name}' has a 'when' guard on unknown step '{condition.step}'",
                    steps=[step.name],
                )
        for template in (step.template, step.verify or ""):
            if step.name in referenced_steps(template):
                raise ConfigurationError(
                    f"Step '{step.name}' interpolates its own output", steps=[step.name]
                )

    cycle = _find_cycle(deps, names)
    if cycle:
        raise ConfigurationError(
            f"Circular dependency detected: {' -> '.join(cycle)}", steps=cycle[:-1]
        )

    for step in steps:
        if step.when is None:
            continue
        guard = parse_condition(step.when).step
        if guard not in _ancestors(step.name, deps):
            raise ConfigurationError(
                f"Step '{step.name}' has a 'when' guard on step '{guard}', "
                "which it does not depend on",
                steps=[step.name, guard],
            )
    return deps


def schedule(steps: list[Step]) -> list[list[str]]:
    """Group steps into waves; every dependency sits in a strictly earlier wave.

    Steps keep their declaration order within a wave.
    """

    deps = validate(steps)
    wave_of: dict[str, int] = {}
    remaining = [s.name for s in steps]

    while remaining:
        progressed: list[str] = []
        for name in remaining:
            if all(d in wave_of for d in deps[name]):
                progressed.append(name)
        # validate() already rejected cycles, so every pass places at least one step.
        for name in progressed:
            wave_of[name] = max((wave_of[d] + 1 for d in deps[name]), default=0)
        remaining = [n for n in remaining if n not in wave_of]

    waves: list[list[str]] = [[] for _ in range(max(wave_of.values(), default=-1) + 1)]
    for step in steps:
        waves[wave_of[step.name]].append(step.name)
    return waves


@dataclass(frozen=True, slots=True)
class QuorumDecision:
    proceed: bool
    required: int
    succeeded: int
    failed: tuple[str, ...]


def evaluate_quorum(
    step: Step, dependencies: list[str], results: Mapping[str, StepResult]
) -> QuorumDecision:
    """Decide whether a gated step may run once its dependencies are terminal.

    Steps without `min_deps_success` always proceed.
    """

    succeeded = [
        d for d in dependencies if d in results and results[d].succeeded
    ]
    failed = tuple(d for d in dependencies if d not in succeeded)
    required = step.min_deps_success or 0
    return QuorumDecision(
        proceed=len(succeeded) >= required,
        required=required,
        succeeded=len(succeeded),
        failed=failed,
    )
