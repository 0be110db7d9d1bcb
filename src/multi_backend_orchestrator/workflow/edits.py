"""Apply exact-match file edits proposed by a step.

Expected shape, possibly embedded in prose:

    {"edits": [{"file": "path", "old": "text", "new": "text"}, ...]}

Edits are applied in order. There is no rollback: if a later edit fails, the
earlier ones stay on disk and are reported on the raised error.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .errors import EditApplicationError
from .models import AppliedEdit

logger = logging.getLogger(__name__)


def _is_edit_set(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    edits = value.get("edits")
    if not isinstance(edits, list):
        return False
    return all(
        isinstance(e, dict) and all(isinstance(e.get(k), str) for k in ("file", "old", "new"))
        for e in edits
    )


def extract_edits(raw_text: str) -> list[dict[str, str]]:
    """Find the first well-formed `{"edits": [...]}` object in `raw_text`.

    Raises:
        EditApplicationError: If no such object exists.
    """

    decoder = json.JSONDecoder()
    start = raw_text.find("{")
    while start != -1:
        try:
            value, _end = decoder.raw_decode(raw_text, start)
        except json.JSONDecodeError:
            value = None
        if _is_edit_set(value):
            return list(value["edits"])
        start = raw_text.find("{", start + 1)

    raise EditApplicationError(
        EditApplicationError.INVALID_EDITS,
        'No {"edits": [{"file", "old", "new"}, ...]} object found in step output',
    )


def apply_edit(edit: dict[str, str], working_directory: Path) -> AppliedEdit:
    file_name = edit["file"]
    path = Path(file_name)
    if not path.is_absolute():
        path = working_directory / path

    if not path.is_file():
        raise EditApplicationError(
            EditApplicationError.FILE_NOT_FOUND, f"File not found: {file_name}", file=file_name
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise EditApplicationError(
            EditApplicationError.IO_ERROR, f"Cannot read {file_name}: {e}", file=file_name
        ) from e

    old = edit["old"]
    count = content.count(old) if old else 0
    if count == 0:
        raise EditApplicationError(
            EditApplicationError.TEXT_NOT_FOUND,
            f"Text to replace not found in {file_name}",
            file=file_name,
        )
    if count > 1:
        raise EditApplicationError(
            EditApplicationError.AMBIGUOUS_MATCH,
            f"Text to replace occurs {count} times in {file_name}",
            file=file_name,
        )

    try:
        path.write_text(content.replace(old, edit["new"], 1), encoding="utf-8")
    except OSError as e:
        raise EditApplicationError(
            EditApplicationError.IO_ERROR, f"Cannot write {file_name}: {e}", file=file_name
        ) from e
    return AppliedEdit(file=file_name, old=old, new=edit["new"])


def apply_edits(raw_text: str, working_directory: Path) -> list[AppliedEdit]:
    """Extract and apply every edit in `raw_text`.

    Raises:
        EditApplicationError: On the first failing edit. `applied` on the error
            lists the edits already written.
    """

    applied: list[AppliedEdit] = []
    for edit in extract_edits(raw_text):
        try:
            applied.append(apply_edit(edit, working_directory))
        except EditApplicationError as e:
            e.applied = list(applied)
            raise
        logger.info("Applied edit", extra={"file": edit["file"]})
    return applied
