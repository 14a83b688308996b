"""Catalog file loading (JSON array, ``{"questions": [...]}`` or JSONL)."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, List, Tuple

from survey_composer.logger import InputInvalidError, get_logger
from survey_composer.models import Question

logger = get_logger("survey_loader")


def _records(path: Path) -> Tuple[List[Any], str | None]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".jsonl", ".ndjson"}:
        rows = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"{path}:{lineno}: skipping malformed line ({e.msg})")
        return rows, None
    data = json.loads(text)
    if isinstance(data, dict):
        return list(data.get("questions") or []), data.get("version")
    return list(data), None


def load_questions(path: str | Path) -> Tuple[List[Question], str | None]:
    """Parse a catalog file into questions plus an optional declared version.

    Malformed records are logged and skipped; the caller decides whether what
    remains is enough to reload.
    """
    p = Path(path)
    rows, version = _records(p)
    out: List[Question] = []
    for i, row in enumerate(rows):
        try:
            out.append(Question.from_dict(row))
        except (ValueError, TypeError, InputInvalidError) as e:
            logger.warning(f"{p}: skipping record #{i}: {e}")
    return out, (str(version) if version is not None else None)


def file_source(path: str | Path) -> Callable[[], Tuple[List[Question], str | None]]:
    """Catalog source callable for ReloadScheduler."""
    def _load():
        return load_questions(path)
    return _load
