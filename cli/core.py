"""Shared helpers for CLI commands."""
from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

# Ensure project root is on sys.path (fallback for development mode)
try:
    import survey_composer
except ImportError:
    ROOT_DIR = Path(__file__).resolve().parent.parent
    if str(ROOT_DIR) not in sys.path:
        sys.path.insert(0, str(ROOT_DIR))

# Load environment variables (SURVEY_*, OPENAI_API_KEY, ...) from .env
try:
    from dotenv import load_dotenv  # type: ignore
    load_dotenv()
except ImportError:
    pass

# Lazy singletons
_model = None


def get_model():
    global _model
    if _model is None:
        from survey_composer.engine.embed import get_embedding_model
        _model = get_embedding_model()
    return _model


def load_index(catalog: str, vector_backend: str | None = None):
    """CatalogIndex loaded from a catalog file; load errors propagate."""
    from survey_composer.engine.config import VECTOR_BACKEND
    from survey_composer.index import CatalogIndex, load_questions

    questions, version = load_questions(catalog)
    index = CatalogIndex(vector_backend=vector_backend or VECTOR_BACKEND)
    index.reload(questions, version=version, strict=True)
    return index


def output_json(data: Any) -> None:
    """Write JSON to stdout for all commands."""
    json.dump(data, sys.stdout, indent=2, default=str, ensure_ascii=False)
    sys.stdout.write("\n")


def run_async(coro) -> Any:
    """Run an async coroutine from sync CLI context."""
    return asyncio.run(coro)
