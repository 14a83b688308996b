#!/usr/bin/env python3
"""
Score fusion for survey candidates.

fused = sum(weight_c * score_c) over the channels a question appeared in.
Missing channels contribute nothing and weights are never renormalized per
question, so a question seen by one channel ranks below one seen by several.

The quality prior then scales the fused score:

    qas = fused * (blend + (1 - blend) * quality_score)

With the default blend of 0.5 a strong match keeps at least half its score
however low its quality.
"""

__all__ = [
    "fuse", "rank_key", "sort_fused", "quality_adjust", "merge_ranked",
]

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from survey_composer.engine.config import EngineSettings
from survey_composer.index.catalog import CatalogSnapshot
from survey_composer.models import Candidate, Channel, FusedCandidate

logger = logging.getLogger("survey_ranking")


def quality_adjust(fused: float, quality: float, blend: float) -> float:
    blend = max(0.0, min(1.0, blend))
    return fused * (blend + (1.0 - blend) * quality)


def rank_key(fc: FusedCandidate, snapshot: CatalogSnapshot) -> Tuple:
    """Total order: qas desc, same language first, quality desc, usage asc, id."""
    q = snapshot.get(fc.question_id)
    quality = q.quality_score if q is not None else 0.0
    return (
        -fc.quality_adjusted_score,
        fc.is_cross_language,
        -quality,
        snapshot.usage_count(fc.question_id),
        fc.question_id,
    )


def sort_fused(items: Iterable[FusedCandidate], snapshot: CatalogSnapshot) -> List[FusedCandidate]:
    return sorted(items, key=lambda fc: rank_key(fc, snapshot))


def fuse(
    per_channel: Mapping[Channel, Sequence[Candidate]],
    snapshot: CatalogSnapshot,
    settings: EngineSettings,
    cross_language: bool = False,
    translation_confidence: Optional[Mapping[str, float]] = None,
) -> List[FusedCandidate]:
    """Combine per-channel candidates into one ranked list.

    Cross-language candidates get their qas multiplied by the language
    mismatch penalty and carry the raw semantic similarity as translation
    confidence (None when the semantic channel did not see them).
    """
    weights = settings.effective_weights()
    scores: Dict[str, Dict[str, float]] = defaultdict(dict)
    channels: Dict[str, Set[Channel]] = defaultdict(set)
    for channel, cands in per_channel.items():
        for c in cands:
            prev = scores[c.question_id].get(channel.value)
            if prev is None or c.raw_score > prev:
                scores[c.question_id][channel.value] = c.raw_score
            channels[c.question_id].add(channel)

    out: List[FusedCandidate] = []
    for qid, by_channel in scores.items():
        q = snapshot.get(qid)
        if q is None:
            continue
        fused = sum(weights.get(name, 0.0) * s for name, s in by_channel.items())
        fused = max(0.0, min(1.0, fused))
        qas = quality_adjust(fused, q.quality_score, settings.quality_blend)
        confidence = None
        if cross_language:
            qas *= settings.language_mismatch_penalty
            if translation_confidence is not None:
                confidence = translation_confidence.get(qid)
        out.append(FusedCandidate(
            question_id=qid,
            fused_score=fused,
            contributing_channels=frozenset(channels[qid]),
            quality_adjusted_score=max(0.0, min(1.0, qas)),
            is_cross_language=cross_language,
            translation_confidence=confidence,
            language=q.language,
            channel_scores=dict(by_channel),
        ))
    ranked = sort_fused(out, snapshot)
    if ranked:
        logger.debug(
            f"Fused {len(ranked)} candidates (cross={cross_language}); "
            f"top={ranked[0].question_id} qas={ranked[0].quality_adjusted_score:.4f}"
        )
    return ranked


def merge_ranked(
    primary: Sequence[FusedCandidate],
    extra: Sequence[FusedCandidate],
    snapshot: CatalogSnapshot,
) -> List[FusedCandidate]:
    """Merge two fused lists; an id already in ``primary`` keeps its primary entry."""
    seen = {fc.question_id for fc in primary}
    merged = list(primary) + [fc for fc in extra if fc.question_id not in seen]
    return sort_fused(merged, snapshot)
