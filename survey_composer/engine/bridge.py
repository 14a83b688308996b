#!/usr/bin/env python3
"""
Cross-language bridge.

When the requested language has thin supply (fewer than 2 x requested_count
fused candidates above BRIDGE_MIN_SCORE), retrieval is re-run against the
paired language. Keyword expansions are bilingual and embeddings share one
cross-lingual space, so the same requirement works on both partitions.
Bridged candidates are penalized and tagged, then merged into one ranking
where they lose every tie against same-language candidates.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from survey_composer.engine.config import EngineSettings
from survey_composer.engine.ranking import fuse, merge_ranked
from survey_composer.engine.retrieval import CandidateRetriever, RetrievalResult
from survey_composer.index.catalog import CatalogSnapshot
from survey_composer.models import FusedCandidate, SurveyRequirement

logger = logging.getLogger("survey_bridge")


@dataclass
class BridgeOutcome:
    ranked: List[FusedCandidate]
    triggered: bool = False
    paired_language: Optional[str] = None
    added: int = 0
    retrieval: Optional[RetrievalResult] = None


class CrossLanguageBridge:
    def __init__(self, retriever: CandidateRetriever, settings: Optional[EngineSettings] = None):
        self.retriever = retriever
        self.settings = settings or retriever.settings

    def same_language_supply(self, ranked: Sequence[FusedCandidate]) -> int:
        floor = self.settings.bridge_min_score
        return sum(
            1 for fc in ranked
            if not fc.is_cross_language and fc.quality_adjusted_score >= floor
        )

    def needs_bridge(self, requirement: SurveyRequirement, ranked: Sequence[FusedCandidate]) -> bool:
        return self.same_language_supply(ranked) < 2 * requirement.requested_count

    def expand(
        self,
        requirement: SurveyRequirement,
        snapshot: CatalogSnapshot,
        ranked: Sequence[FusedCandidate],
        embedding: Optional[Sequence[float]] = None,
    ) -> BridgeOutcome:
        """Return ``ranked`` merged with paired-language candidates when needed."""
        if not self.needs_bridge(requirement, ranked):
            return BridgeOutcome(ranked=list(ranked))
        paired = self.settings.paired_language(requirement.language)
        if not paired or not snapshot.ids_for_language(paired):
            logger.debug(f"No bridge partner with questions for language '{requirement.language}'")
            return BridgeOutcome(ranked=list(ranked))

        result = self.retriever.retrieve(requirement, snapshot, language=paired, embedding=embedding)
        bridged = fuse(
            result.candidates,
            snapshot,
            self.settings,
            cross_language=True,
            translation_confidence=result.semantic_scores(),
        )
        merged = merge_ranked(ranked, bridged, snapshot)
        added = len(merged) - len(ranked)
        logger.info(
            f"Bridge {requirement.language}->{paired}: same-language supply "
            f"{self.same_language_supply(ranked)} < {2 * requirement.requested_count}, added {added}"
        )
        return BridgeOutcome(
            ranked=merged,
            triggered=True,
            paired_language=paired,
            added=added,
            retrieval=result,
        )
