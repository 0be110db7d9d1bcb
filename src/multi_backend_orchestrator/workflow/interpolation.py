"""Resolve `{{ steps.<name>.output[.<field>...] }}` references in templates.

Substitution is a single pass over the template. Text that came from a step's
output is inserted verbatim and never scanned again, so a backend cannot smuggle
template directives into downstream steps.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from .errors import InterpolationError
from .models import StepResult
from .output_parser import STRUCTURED_FORMATS

PLACEHOLDER_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
PATH_RE = re.compile(r"^steps\.([A-Za-z0-9_-]+)\.output((?:\.[A-Za-z0-9_-]+)*)$")


def referenced_steps(template: str) -> set[str]:
    """Names of every step referenced by a well-formed placeholder."""

    names: set[str] = set()
    for match in PLACEHOLDER_RE.finditer(template):
        path = PATH_RE.match(match.group(1))
        if path:
            names.add(path.group(1))
    return names


def _lookup_field(parsed: Any, fields: list[str], *, path: str) -> Any:
    value = parsed
    for name in fields:
        if isinstance(value, Mapping):
            if name not in value:
                raise InterpolationError(f"Field '{name}' not found resolving '{path}'")
            value = value[name]
        elif isinstance(value, list):
            try:
                value = value[int(name)]
            except (ValueError, IndexError):
                raise InterpolationError(
                    f"Index '{name}' not valid for list resolving '{path}'"
                ) from None
        else:
            raise InterpolationError(f"Cannot read field '{name}' of a scalar resolving '{path}'")
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def resolve(path: str, results: Mapping[str, StepResult]) -> str:
    """Resolve one placeholder path against recorded step results."""

    match = PATH_RE.match(path)
    if match is None:
        raise InterpolationError(f"Unsupported template reference '{{{{ {path} }}}}'")

    name, field_part = match.group(1), match.group(2)
    result = results.get(name)
    if result is None:
        raise InterpolationError(f"Step '{name}' has no result to interpolate ('{path}')")

    if not field_part:
        return result.output

    if result.parsed is None or result.output_format not in STRUCTURED_FORMATS:
        raise InterpolationError(
            f"Step '{name}' has no structured output; cannot resolve '{path}'"
        )
    fields = field_part.lstrip(".").split(".")
    return _stringify(_lookup_field(result.parsed, fields, path=path))


def render(template: str, results: Mapping[str, StepResult]) -> str:
    """Render `template`, replacing every placeholder exactly once.

    Raises:
        InterpolationError: If any reference cannot be resolved.
    """

    return PLACEHOLDER_RE.sub(lambda m: resolve(m.group(1), results), template)
