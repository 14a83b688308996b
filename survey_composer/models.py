"""
Value objects shared by the catalog index and the composition pipeline.

Questions and requirements are immutable; candidates and fused candidates are
transient per-request records; drafts are immutable once produced so they can
be cached and handed to several callers at once.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from survey_composer.logger import InputInvalidError


class Metric(str, Enum):
    """Organizational metrics a question can measure."""

    LOYALTY = "loyalty"
    COMMITMENT = "commitment"
    SATISFACTION = "satisfaction"
    ENGAGEMENT = "engagement"
    MOTIVATION = "motivation"
    WELLBEING = "wellbeing"
    LEADERSHIP = "leadership"
    COMMUNICATION = "communication"
    RECOGNITION = "recognition"
    ALIGNMENT = "alignment"

    @classmethod
    def parse(cls, value: Any) -> "Metric":
        if isinstance(value, Metric):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InputInvalidError(f"unknown metric: {value!r}") from None


class Channel(str, Enum):
    """Independent retrieval strategies."""

    EXACT = "exact"
    FILTER = "filter"
    TEXT = "text"
    SEMANTIC = "semantic"


def _split_path(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(p.strip() for p in value.split("/") if p.strip())
    return tuple(str(p).strip() for p in value if str(p).strip())


def _clamp01(x: float) -> float:
    if math.isnan(x):
        return 0.0
    return max(0.0, min(1.0, x))


@dataclass(frozen=True)
class Question:
    """Immutable catalog entry."""

    id: str
    language: str
    text: str
    category_path: Tuple[str, ...] = ()
    theme_path: Tuple[str, ...] = ()
    tags: FrozenSet[str] = frozenset()
    quality_score: float = 0.5
    metric_coverage: FrozenSet[Metric] = frozenset()
    embedding: Tuple[float, ...] = ()
    sensitivity: int = 0
    usage_count: int = 0
    name: str = ""

    @property
    def top_category(self) -> str:
        return self.category_path[0] if self.category_path else ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Question":
        """Build a question from a catalog record (snake_case or camelCase keys)."""
        def pick(*keys, default=None):
            for k in keys:
                if k in data and data[k] is not None:
                    return data[k]
            return default

        qid = str(pick("id", "question_id", "questionId", default="")).strip()
        if not qid:
            raise ValueError("question record without id")
        language = str(pick("language", "lang", default="")).strip().lower()
        if not language:
            raise ValueError(f"question {qid} has no language")
        metrics = frozenset(
            Metric.parse(m) for m in (pick("metric_coverage", "metricCoverage", "metrics", default=()) or ())
        )
        return cls(
            id=qid,
            language=language,
            text=str(pick("text", default="")),
            category_path=_split_path(pick("category_path", "categoryPath", "category")),
            theme_path=_split_path(pick("theme_path", "themePath", "theme")),
            tags=frozenset(str(t).strip().lower() for t in (pick("tags", default=()) or ()) if str(t).strip()),
            quality_score=_clamp01(float(pick("quality_score", "qualityScore", default=0.5))),
            metric_coverage=metrics,
            embedding=tuple(float(x) for x in (pick("embedding", default=()) or ())),
            sensitivity=int(pick("sensitivity", default=0)),
            usage_count=int(pick("usage_count", "usageCount", default=0)),
            name=str(pick("name", default="")),
        )


@dataclass(frozen=True)
class SurveyRequirement:
    """Structured survey request produced by the upstream normalizer."""

    language: str
    industry: str = ""
    requested_count: int = 10
    target_metrics: FrozenSet[Metric] = frozenset()
    keyword_expansions: FrozenSet[str] = frozenset()
    category_constraints: Optional[Tuple[Tuple[str, ...], ...]] = None
    embedding: Optional[Tuple[float, ...]] = None

    def validate(self) -> None:
        if not isinstance(self.requested_count, int) or isinstance(self.requested_count, bool):
            raise InputInvalidError("requested_count must be an integer")
        if self.requested_count <= 0:
            raise InputInvalidError(f"requested_count must be positive, got {self.requested_count}")
        if not (self.language or "").strip():
            raise InputInvalidError("language is required")
        for m in self.target_metrics:
            if not isinstance(m, Metric):
                raise InputInvalidError(f"unknown metric: {m!r}")

    def query_terms(self) -> list[str]:
        """Keyword expansions plus industry, deterministically ordered."""
        terms = sorted({k.strip() for k in self.keyword_expansions if k and k.strip()})
        if self.industry and self.industry.strip():
            terms.append(self.industry.strip())
        return terms

    @classmethod
    def create(
        cls,
        language: str,
        requested_count: int,
        target_metrics: Iterable[Any] = (),
        keyword_expansions: Iterable[str] = (),
        industry: str = "",
        category_constraints: Optional[Iterable[Any]] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> "SurveyRequirement":
        constraints = None
        if category_constraints is not None:
            constraints = tuple(sorted({_split_path(c) for c in category_constraints if _split_path(c)}))
        req = cls(
            language=(language or "").strip().lower(),
            industry=industry or "",
            requested_count=requested_count,
            target_metrics=frozenset(Metric.parse(m) for m in target_metrics),
            keyword_expansions=frozenset(k.strip() for k in keyword_expansions if k and k.strip()),
            category_constraints=constraints or None,
            embedding=tuple(float(x) for x in embedding) if embedding is not None else None,
        )
        req.validate()
        return req

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SurveyRequirement":
        def pick(*keys, default=None):
            for k in keys:
                if k in data and data[k] is not None:
                    return data[k]
            return default

        try:
            count = int(pick("requested_count", "requestedCount", default=0))
        except (TypeError, ValueError):
            raise InputInvalidError("requested_count must be an integer") from None
        return cls.create(
            language=str(pick("language", "lang", default="")),
            requested_count=count,
            target_metrics=pick("target_metrics", "targetMetrics", default=()) or (),
            keyword_expansions=pick("keyword_expansions", "keywordExpansions", "keywords", default=()) or (),
            industry=str(pick("industry", default="")),
            category_constraints=pick("category_constraints", "categoryConstraints"),
            embedding=pick("embedding"),
        )


@dataclass(frozen=True)
class Candidate:
    question_id: str
    channel: Channel
    raw_score: float


@dataclass(frozen=True)
class FusedCandidate:
    question_id: str
    fused_score: float
    contributing_channels: FrozenSet[Channel]
    quality_adjusted_score: float
    is_cross_language: bool = False
    translation_confidence: Optional[float] = None
    language: str = ""
    channel_scores: Mapping[str, float] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class CoverageWarning:
    """Non-fatal annotation: a requested constraint could not be fully met."""

    code: str
    subject: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "subject": self.subject, "message": self.message}


@dataclass(frozen=True)
class SurveyDraft:
    question_ids: Tuple[str, ...]
    coverage_map: Mapping[str, int]
    category_distribution: Mapping[str, int]
    language_consistency_ratio: float
    coverage_warnings: Tuple[CoverageWarning, ...] = ()
    requested_count: int = 0
    items: Tuple[FusedCandidate, ...] = ()
    catalog_version: str = ""
    fingerprint: str = ""
    reranked: bool = False

    def __len__(self) -> int:
        return len(self.question_ids)

    @property
    def is_complete(self) -> bool:
        return len(self.question_ids) == self.requested_count

    @property
    def cross_language_ids(self) -> Tuple[str, ...]:
        return tuple(i.question_id for i in self.items if i.is_cross_language)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_ids": list(self.question_ids),
            "requested_count": self.requested_count,
            "coverage_map": dict(self.coverage_map),
            "category_distribution": dict(self.category_distribution),
            "language_consistency_ratio": self.language_consistency_ratio,
            "coverage_warnings": [w.to_dict() for w in self.coverage_warnings],
            "catalog_version": self.catalog_version,
            "fingerprint": self.fingerprint,
            "reranked": self.reranked,
            "items": [
                {
                    "question_id": i.question_id,
                    "fused_score": round(i.fused_score, 6),
                    "quality_adjusted_score": round(i.quality_adjusted_score, 6),
                    "channels": sorted(c.value for c in i.contributing_channels),
                    "is_cross_language": i.is_cross_language,
                    "translation_confidence": i.translation_confidence,
                }
                for i in self.items
            ],
        }
