"""Turn raw backend text into structured output."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from .errors import ParseError

logger = logging.getLogger(__name__)

STRUCTURED_FORMATS = frozenset({"json", "json_array"})

_FENCE_RE = re.compile(r"^\s*```(?:json|jsonl)?\s*\n(.*?)\n\s*```\s*$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class ParsedOutput:
    format: str
    text: str
    value: Any = None

    @property
    def structured(self) -> bool:
        return self.format in STRUCTURED_FORMATS


def _strip_fence(text: str) -> str:
    # Backends like to wrap JSON in a markdown code fence.
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def _loads(text: str, *, expected: str) -> Any:
    try:
        return json.loads(_strip_fence(text))
    except json.JSONDecodeError as e:
        raise ParseError(f"Output is not valid JSON ({expected}): {e}") from e


def parse(raw_text: str, output_format: str = "text") -> ParsedOutput:
    """Parse `raw_text` according to `output_format`.

    Raises:
        ParseError: For `json`/`json_array` output that does not parse or has the
            wrong shape. `jsonl` never raises: unparsable lines are skipped.
    """

    if output_format == "text":
        return ParsedOutput(format="text", text=raw_text)

    if output_format == "json":
        value = _loads(raw_text, expected="object")
        if not isinstance(value, dict):
            raise ParseError(f"Expected a JSON object, got {type(value).__name__}")
        return ParsedOutput(format="json", text=raw_text, value=value)

    if output_format == "json_array":
        value = _loads(raw_text, expected="array")
        if not isinstance(value, list):
            raise ParseError(f"Expected a JSON array, got {type(value).__name__}")
        if not all(isinstance(item, dict) for item in value):
            raise ParseError("Expected a JSON array of objects")
        return ParsedOutput(format="json_array", text=raw_text, value=value)

    if output_format == "jsonl":
        items: list[Any] = []
        skipped = 0
        for line in raw_text.splitlines():
            if not line.strip():
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError:
                skipped += 1
        if skipped:
            logger.debug("Skipped non-JSON lines in jsonl output", extra={"skipped": skipped})
        return ParsedOutput(format="jsonl", text=raw_text, value=items)

    raise ValueError(f"Unknown output format: {output_format}")
