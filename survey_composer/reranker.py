#!/usr/bin/env python3
"""
Optional LLM reranking of a composed draft.

The reranker is a best-effort post-processor: it may reorder the draft or
substitute items from the fused candidate list. Its reply is only a proposal;
``apply_rerank`` accepts it when it keeps the draft length, has no duplicates,
uses known candidates, respects the category and cross-language caps and
covers at least the target metrics the deterministic draft covered. Anything
else raises RerankError and the deterministic draft stands.

Configuration:
- OPENAI_API_KEY / OPENAI_API_BASE: credentials and endpoint
- SURVEY_RERANK_MODEL: model name (default: gpt-4.1-mini)
- RERANK_TIMEOUT: request timeout in seconds
"""
from __future__ import annotations

import json
import os
from dataclasses import replace
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from survey_composer.engine.config import EngineSettings
from survey_composer.engine.selector import build_draft, category_cap, cross_language_cap
from survey_composer.index.catalog import CatalogSnapshot
from survey_composer.llm_utils import parse_json_reply
from survey_composer.logger import RerankError, get_logger
from survey_composer.models import FusedCandidate, SurveyDraft, SurveyRequirement

logger = get_logger("survey_rerank")

MAX_PROMPT_CANDIDATES = int(os.environ.get("SURVEY_RERANK_MAX_CANDIDATES", "40") or 40)


@runtime_checkable
class Reranker(Protocol):
    def rerank(
        self,
        requirement: SurveyRequirement,
        draft: SurveyDraft,
        fused: Sequence[FusedCandidate],
    ) -> List[str]:
        """Return the proposed ordered question ids."""
        ...


def apply_rerank(
    requirement: SurveyRequirement,
    draft: SurveyDraft,
    proposal: Sequence[str],
    fused: Sequence[FusedCandidate],
    snapshot: CatalogSnapshot,
    settings: EngineSettings,
) -> SurveyDraft:
    """Validate a proposed ordering and rebuild the draft from it."""
    ids = [str(x) for x in proposal]
    if len(ids) != len(draft):
        raise RerankError(f"reranker returned {len(ids)} ids for a draft of {len(draft)}")
    if len(set(ids)) != len(ids):
        raise RerankError("reranker returned duplicate ids")

    by_id: Dict[str, FusedCandidate] = {fc.question_id: fc for fc in fused}
    by_id.update({fc.question_id: fc for fc in draft.items})
    unknown = [qid for qid in ids if qid not in by_id or qid not in snapshot]
    if unknown:
        raise RerankError(f"reranker returned unknown ids: {unknown[:5]}")

    items = [by_id[qid] for qid in ids]
    n = requirement.requested_count
    cat_limit = category_cap(n, settings.category_cap_ratio)
    cats: Dict[str, int] = {}
    for fc in items:
        cat = snapshot[fc.question_id].top_category
        if cat:
            cats[cat] = cats.get(cat, 0) + 1
    over = sorted(c for c, k in cats.items() if k > cat_limit)
    if over:
        raise RerankError(f"reranked draft exceeds category cap for {over}")

    cross = sum(1 for fc in items if fc.is_cross_language)
    if cross > max(cross_language_cap(n, settings.cross_lang_cap_ratio), len(draft.cross_language_ids)):
        raise RerankError(f"reranked draft has {cross} cross-language items")

    rebuilt = build_draft(requirement, items, snapshot)
    lost = [
        m for m, k in draft.coverage_map.items()
        if k > 0 and rebuilt.coverage_map.get(m, 0) == 0
    ]
    if lost:
        raise RerankError(f"reranked draft drops coverage of {lost}")
    # substituted items may cover a metric the deterministic draft missed
    warnings = tuple(
        w for w in draft.coverage_warnings
        if w.code != "uncovered_metric" or rebuilt.coverage_map.get(w.subject, 0) == 0
    )
    return replace(rebuilt, coverage_warnings=warnings, fingerprint=draft.fingerprint, reranked=True)


class OpenAIReranker:
    """Reranker backed by an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        snapshot_provider,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Any = None,
    ) -> None:
        self.snapshot_provider = snapshot_provider
        self.model = model or os.environ.get("SURVEY_RERANK_MODEL", "gpt-4.1-mini")
        if client is None:
            api_key = api_key or os.environ.get("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise ValueError("OPENAI_API_KEY is required for the OpenAI reranker")
            if timeout is None:
                try:
                    timeout = float(os.environ.get("RERANK_TIMEOUT", "8") or 8)
                except ValueError:
                    timeout = 8.0
            from openai import OpenAI
            client = OpenAI(
                api_key=api_key,
                base_url=base_url or os.environ.get("OPENAI_API_BASE", "https://api.openai.com/v1"),
                timeout=timeout,
            )
        self.client = client

    def _prompt(self, requirement: SurveyRequirement, draft: SurveyDraft, fused: Sequence[FusedCandidate]) -> str:
        snapshot = self.snapshot_provider()
        pool: List[FusedCandidate] = list(draft.items)
        chosen = set(draft.question_ids)
        pool.extend(fc for fc in fused if fc.question_id not in chosen)
        rows = []
        for fc in pool[:max(MAX_PROMPT_CANDIDATES, len(draft))]:
            q = snapshot.get(fc.question_id)
            if q is None:
                continue
            rows.append({
                "id": q.id,
                "text": q.text,
                "language": q.language,
                "category": q.top_category,
                "metrics": sorted(m.value for m in q.metric_coverage),
                "sensitivity": q.sensitivity,
                "score": round(fc.quality_adjusted_score, 4),
            })
        return (
            f"Survey for the {requirement.industry or 'general'} industry in language "
            f"'{requirement.language}', {requirement.requested_count} questions, target metrics: "
            f"{', '.join(sorted(m.value for m in requirement.target_metrics)) or 'none'}.\n"
            f"Current draft order: {json.dumps(list(draft.question_ids))}\n"
            f"Candidates: {json.dumps(rows, ensure_ascii=False)}\n"
            f"Return JSON {{\"question_ids\": [...]}} with exactly {len(draft)} ids from the candidates, "
            "in the order they should be asked. Prefer the requested language, keep sensitive "
            "questions late and keep every target metric covered."
        )

    def rerank(self, requirement: SurveyRequirement, draft: SurveyDraft, fused: Sequence[FusedCandidate]) -> List[str]:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You order survey questions. Reply with JSON only."},
                    {"role": "user", "content": self._prompt(requirement, draft, fused)},
                ],
                response_format={"type": "json_object"},
                temperature=0.0,
            )
            content = (response.choices[0].message.content or "").strip()
        except Exception as e:
            raise RerankError(f"OpenAI rerank failed: {e}") from e
        try:
            data = parse_json_reply(content)
        except ValueError as e:
            raise RerankError(f"reranker reply is not JSON: {e}") from e
        ids = data.get("question_ids") if isinstance(data, dict) else data
        if not isinstance(ids, list):
            raise RerankError("reranker reply has no question_ids list")
        return [str(x) for x in ids]
