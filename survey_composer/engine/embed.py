#!/usr/bin/env python3
"""
Query embedding for the semantic channel.

Requirements usually arrive with an embedding from the upstream normalizer.
When they don't, the composer can embed the keyword text itself with a
multilingual fastembed model so Turkish and English questions share one space.
Embeddings are cached per (model, text) in the unified embedding cache.
"""

from __future__ import annotations

import os
import threading
from typing import Any, Dict, List, Optional

try:
    from fastembed import TextEmbedding
except ImportError:
    TextEmbedding = None  # type: ignore

from survey_composer.cache_manager import get_embedding_cache
from survey_composer.logger import get_logger
from survey_composer.models import SurveyRequirement

logger = get_logger("survey_embed")

MODEL_NAME = os.environ.get(
    "EMBEDDING_MODEL", "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
)

_MODELS: Dict[str, Any] = {}
_MODEL_LOCK = threading.Lock()


def get_embedding_model(model_name: Optional[str] = None) -> Any:
    """Get or create a shared TextEmbedding instance.

    Raises:
        ImportError: if fastembed is not installed.
    """
    name = model_name or MODEL_NAME
    model = _MODELS.get(name)
    if model is not None:
        return model
    if TextEmbedding is None:
        raise ImportError("fastembed is not installed. Install with: pip install fastembed")
    with _MODEL_LOCK:
        model = _MODELS.get(name)
        if model is None:
            logger.info(f"Loading embedding model {name}")
            model = TextEmbedding(model_name=name)
            _MODELS[name] = model
    return model


def embed_queries_cached(model: Any, queries: List[str]) -> List[List[float]]:
    """Embed queries, batch-computing only the ones missing from the cache."""
    name = str(getattr(model, "model_name", None) or MODEL_NAME)
    cache = get_embedding_cache()

    missing = [q for q in dict.fromkeys(str(q) for q in queries) if cache.get((name, q)) is None]
    if missing:
        for q, vec in zip(missing, model.embed(missing)):
            cache.set((name, q), [float(x) for x in vec])

    out: List[List[float]] = []
    for q in queries:
        v = cache.get((name, str(q)))
        if v is not None:
            out.append(v)
    return out


def requirement_text(requirement: SurveyRequirement) -> str:
    """Text the semantic channel embeds when no embedding was supplied."""
    parts = list(requirement.query_terms())
    parts.extend(sorted(m.value for m in requirement.target_metrics))
    return " ".join(parts)


def embed_requirement(requirement: SurveyRequirement, model: Any) -> Optional[List[float]]:
    """Embedding for a requirement: the supplied one, else the model's."""
    if requirement.embedding is not None:
        return list(requirement.embedding)
    if model is None:
        return None
    text = requirement_text(requirement)
    if not text:
        return None
    vecs = embed_queries_cached(model, [text])
    return vecs[0] if vecs else None
