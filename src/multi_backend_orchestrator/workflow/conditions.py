"""`when` guards: run a step only if an earlier output matches.

Supported forms:

    steps.<name>.output contains '<text>'
    steps.<name>.output not contains '<text>'
    steps.<name>.output equals '<text>'
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import StepResult

CONDITION_RE = re.compile(
    r"""^\s*steps\.(?P<step>[A-Za-z0-9_-]+)\.output\s+
        (?P<op>not\s+contains|contains|equals)\s+
        (?P<quote>['"])(?P<value>.*)(?P=quote)\s*$""",
    re.VERBOSE | re.DOTALL,
)


@dataclass(frozen=True, slots=True)
class Condition:
    step: str
    op: str
    value: str

    def evaluate(self, results: Mapping[str, StepResult]) -> bool:
        result = results.get(self.step)
        if result is None:
            return False
        output = result.output
        if self.op == "contains":
            return self.value in output
        if self.op == "not contains":
            return self.value not in output
        return output.strip() == self.value


def parse_condition(expression: str) -> Condition:
    match = CONDITION_RE.match(expression)
    if match is None:
        raise ValueError(f"Unsupported condition: {expression!r}")
    op = " ".join(match.group("op").split())
    return Condition(step=match.group("step"), op=op, value=match.group("value"))
