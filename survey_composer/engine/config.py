#!/usr/bin/env python3
"""
Configuration constants for survey composition.

All scoring weights, caps, timeouts and cache settings are read from the
environment with safe defaults. ``EngineSettings`` snapshots them into one
immutable object so a composer (or a test) can run with explicit values.
"""
__all__ = [
    "_safe_int", "_safe_float", "_env_truthy", "_parse_language_pairs",
    "WEIGHT_EXACT", "WEIGHT_FILTER", "WEIGHT_TEXT", "WEIGHT_SEMANTIC",
    "QUALITY_BLEND", "RETRIEVAL_HEADROOM", "CHANNEL_TIMEOUT", "MIN_FILTER_QUALITY",
    "LANGUAGE_MISMATCH_PENALTY", "BRIDGE_MIN_SCORE", "LANGUAGE_PAIRS",
    "CATEGORY_CAP_RATIO", "CROSS_LANG_CAP_RATIO", "REPAIR_MAX_ITERATIONS",
    "MIN_VIABLE_ITEMS", "DRAFT_CACHE_TTL", "VECTOR_BACKEND", "RERANK_ENABLED",
    "RERANK_TIMEOUT", "RETRIEVAL_WORKERS", "SEMANTIC_WORKERS", "CHANNEL_MAX_STRAGGLERS",
    "EngineSettings",
]
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


# ---------------------------------------------------------------------------
# Helper functions for safe parsing of environment variables
# ---------------------------------------------------------------------------

def _safe_int(val: Any, default: int) -> int:
    """Safely parse an integer from a value, returning default on failure."""
    try:
        if val is None or (isinstance(val, str) and val.strip() == ""):
            return default
        return int(val)
    except (ValueError, TypeError):
        return default


def _safe_float(val: Any, default: float) -> float:
    """Safely parse a float from a value, returning default on failure."""
    try:
        if val is None or (isinstance(val, str) and val.strip() == ""):
            return default
        return float(val)
    except (ValueError, TypeError):
        return default


def _env_truthy(val: str | None, default: bool) -> bool:
    """Check if an environment variable value is truthy."""
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def _parse_language_pairs(raw: str | None) -> Dict[str, str]:
    """Parse ``tr:en,de:en`` into a symmetric language pairing map."""
    pairs: Dict[str, str] = {}
    for chunk in (raw or "").split(","):
        if ":" not in chunk:
            continue
        left, right = (p.strip().lower() for p in chunk.split(":", 1))
        if not left or not right or left == right:
            continue
        pairs.setdefault(left, right)
        pairs.setdefault(right, left)
    return pairs


# ---------------------------------------------------------------------------
# Channel weights and quality prior
# ---------------------------------------------------------------------------

WEIGHT_EXACT = _safe_float(os.environ.get("SURVEY_WEIGHT_EXACT", "0.30"), 0.30)
WEIGHT_FILTER = _safe_float(os.environ.get("SURVEY_WEIGHT_FILTER", "0.15"), 0.15)
WEIGHT_TEXT = _safe_float(os.environ.get("SURVEY_WEIGHT_TEXT", "0.25"), 0.25)
WEIGHT_SEMANTIC = _safe_float(os.environ.get("SURVEY_WEIGHT_SEMANTIC", "0.30"), 0.30)

# qas = fused * (QUALITY_BLEND + (1 - QUALITY_BLEND) * quality)
QUALITY_BLEND = _safe_float(os.environ.get("SURVEY_QUALITY_BLEND", "0.5"), 0.5)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

RETRIEVAL_HEADROOM = _safe_int(os.environ.get("SURVEY_RETRIEVAL_HEADROOM", "4"), 4)
CHANNEL_TIMEOUT = _safe_float(os.environ.get("SURVEY_CHANNEL_TIMEOUT", "2.0"), 2.0)
MIN_FILTER_QUALITY = _safe_float(os.environ.get("SURVEY_MIN_FILTER_QUALITY", "0.0"), 0.0)
RETRIEVAL_WORKERS = _safe_int(os.environ.get("SURVEY_RETRIEVAL_WORKERS", "8"), 8)
SEMANTIC_WORKERS = _safe_int(os.environ.get("SURVEY_SEMANTIC_WORKERS", "4"), 4)
# timed-out calls still running per channel before the channel is skipped
CHANNEL_MAX_STRAGGLERS = _safe_int(os.environ.get("SURVEY_CHANNEL_MAX_STRAGGLERS", "2"), 2)


# ---------------------------------------------------------------------------
# Cross-language bridge
# ---------------------------------------------------------------------------

LANGUAGE_MISMATCH_PENALTY = _safe_float(os.environ.get("SURVEY_LANG_PENALTY", "0.85"), 0.85)
BRIDGE_MIN_SCORE = _safe_float(os.environ.get("SURVEY_BRIDGE_MIN_SCORE", "0.05"), 0.05)
LANGUAGE_PAIRS = _parse_language_pairs(os.environ.get("SURVEY_LANGUAGE_PAIRS", "tr:en"))


# ---------------------------------------------------------------------------
# Selection constraints
# ---------------------------------------------------------------------------

CATEGORY_CAP_RATIO = _safe_float(os.environ.get("SURVEY_CATEGORY_CAP_RATIO", "0.4"), 0.4)
CROSS_LANG_CAP_RATIO = _safe_float(os.environ.get("SURVEY_CROSS_LANG_CAP_RATIO", "0.2"), 0.2)
REPAIR_MAX_ITERATIONS = _safe_int(os.environ.get("SURVEY_REPAIR_MAX_ITERATIONS", "5"), 5)
MIN_VIABLE_ITEMS = _safe_int(os.environ.get("SURVEY_MIN_VIABLE_ITEMS", "1"), 1)


# ---------------------------------------------------------------------------
# Cache, vector backend, reranker
# ---------------------------------------------------------------------------

DRAFT_CACHE_TTL = _safe_float(os.environ.get("SURVEY_DRAFT_CACHE_TTL", "600"), 600.0)
VECTOR_BACKEND = os.environ.get("SURVEY_VECTOR_BACKEND", "numpy").strip().lower() or "numpy"
RERANK_ENABLED = _env_truthy(os.environ.get("SURVEY_RERANK_ENABLED"), False)
RERANK_TIMEOUT = _safe_float(os.environ.get("RERANK_TIMEOUT", "8.0"), 8.0)


def _channel_timeout_overrides() -> Dict[str, float]:
    out: Dict[str, float] = {}
    for name in ("exact", "filter", "text", "semantic"):
        raw = os.environ.get(f"SURVEY_CHANNEL_TIMEOUT_{name.upper()}")
        if raw is not None and raw.strip():
            out[name] = _safe_float(raw, CHANNEL_TIMEOUT)
    return out


@dataclass(frozen=True)
class EngineSettings:
    """Immutable snapshot of every tunable used by the pipeline."""

    weights: Mapping[str, float] = field(default_factory=lambda: {
        "exact": WEIGHT_EXACT,
        "filter": WEIGHT_FILTER,
        "text": WEIGHT_TEXT,
        "semantic": WEIGHT_SEMANTIC,
    })
    quality_blend: float = QUALITY_BLEND
    retrieval_headroom: int = RETRIEVAL_HEADROOM
    channel_timeout: float = CHANNEL_TIMEOUT
    channel_timeouts: Mapping[str, float] = field(default_factory=_channel_timeout_overrides)
    min_filter_quality: float = MIN_FILTER_QUALITY
    language_mismatch_penalty: float = LANGUAGE_MISMATCH_PENALTY
    bridge_min_score: float = BRIDGE_MIN_SCORE
    language_pairs: Mapping[str, str] = field(default_factory=lambda: dict(LANGUAGE_PAIRS))
    category_cap_ratio: float = CATEGORY_CAP_RATIO
    cross_lang_cap_ratio: float = CROSS_LANG_CAP_RATIO
    repair_max_iterations: int = REPAIR_MAX_ITERATIONS
    min_viable_items: int = MIN_VIABLE_ITEMS
    draft_cache_ttl: float = DRAFT_CACHE_TTL
    rerank_timeout: float = RERANK_TIMEOUT
    retrieval_workers: int = RETRIEVAL_WORKERS
    semantic_workers: int = SEMANTIC_WORKERS
    channel_max_stragglers: int = CHANNEL_MAX_STRAGGLERS

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Re-read settings from ``env`` (default ``os.environ``) at call time."""
        e = os.environ if env is None else env
        weights = {
            "exact": _safe_float(e.get("SURVEY_WEIGHT_EXACT"), 0.30),
            "filter": _safe_float(e.get("SURVEY_WEIGHT_FILTER"), 0.15),
            "text": _safe_float(e.get("SURVEY_WEIGHT_TEXT"), 0.25),
            "semantic": _safe_float(e.get("SURVEY_WEIGHT_SEMANTIC"), 0.30),
        }
        default_timeout = _safe_float(e.get("SURVEY_CHANNEL_TIMEOUT"), 2.0)
        overrides = {}
        for name in weights:
            raw = e.get(f"SURVEY_CHANNEL_TIMEOUT_{name.upper()}")
            if raw is not None and raw.strip():
                overrides[name] = _safe_float(raw, default_timeout)
        return cls(
            weights=weights,
            quality_blend=_safe_float(e.get("SURVEY_QUALITY_BLEND"), 0.5),
            retrieval_headroom=_safe_int(e.get("SURVEY_RETRIEVAL_HEADROOM"), 4),
            channel_timeout=default_timeout,
            channel_timeouts=overrides,
            min_filter_quality=_safe_float(e.get("SURVEY_MIN_FILTER_QUALITY"), 0.0),
            language_mismatch_penalty=_safe_float(e.get("SURVEY_LANG_PENALTY"), 0.85),
            bridge_min_score=_safe_float(e.get("SURVEY_BRIDGE_MIN_SCORE"), 0.05),
            language_pairs=_parse_language_pairs(e.get("SURVEY_LANGUAGE_PAIRS", "tr:en")),
            category_cap_ratio=_safe_float(e.get("SURVEY_CATEGORY_CAP_RATIO"), 0.4),
            cross_lang_cap_ratio=_safe_float(e.get("SURVEY_CROSS_LANG_CAP_RATIO"), 0.2),
            repair_max_iterations=_safe_int(e.get("SURVEY_REPAIR_MAX_ITERATIONS"), 5),
            min_viable_items=_safe_int(e.get("SURVEY_MIN_VIABLE_ITEMS"), 1),
            draft_cache_ttl=_safe_float(e.get("SURVEY_DRAFT_CACHE_TTL"), 600.0),
            rerank_timeout=_safe_float(e.get("RERANK_TIMEOUT"), 8.0),
            retrieval_workers=_safe_int(e.get("SURVEY_RETRIEVAL_WORKERS"), 8),
            semantic_workers=_safe_int(e.get("SURVEY_SEMANTIC_WORKERS"), 4),
            channel_max_stragglers=_safe_int(e.get("SURVEY_CHANNEL_MAX_STRAGGLERS"), 2),
        )

    def effective_weights(self) -> Dict[str, float]:
        """Channel weights, scaled down once if they sum past 1.0.

        Scaling is global so fused scores stay within [0, 1]; it never depends
        on which channels a particular question appeared in.
        """
        clean = {k: max(0.0, float(v)) for k, v in self.weights.items()}
        total = sum(clean.values())
        if total > 1.0:
            return {k: v / total for k, v in clean.items()}
        return clean

    def timeout_for(self, channel: str) -> float:
        return float(self.channel_timeouts.get(channel, self.channel_timeout))

    def paired_language(self, language: str) -> Optional[str]:
        return self.language_pairs.get((language or "").strip().lower())

    def headroom_limit(self, requested_count: int) -> int:
        return max(1, int(requested_count)) * max(1, int(self.retrieval_headroom))
