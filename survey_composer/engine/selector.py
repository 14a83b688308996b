#!/usr/bin/env python3
"""
Constrained selection of the final question set.

Given the fused ranking, pick ``requested_count`` questions such that:

- every target metric is covered when requested_count >= |target_metrics|
  (best effort otherwise)
- no top-level category holds more than ceil(N * CATEGORY_CAP_RATIO) items
- cross-language items stay within ceil(N * CROSS_LANG_CAP_RATIO) unless the
  same-language supply runs out

The algorithm is a greedy pass in rank order, a cross-language relaxation pass
when the draft is still short, and a bounded repair loop that swaps in
candidates for uncovered metrics. Unmet constraints become coverage warnings,
never padding. The result is a pure function of its inputs.
"""

__all__ = [
    "ConstrainedSelector", "SelectionState", "order_selection", "build_draft",
    "category_cap", "cross_language_cap",
]

import math
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from survey_composer.engine.config import EngineSettings
from survey_composer.index.catalog import CatalogSnapshot
from survey_composer.logger import InsufficientCatalogCoverageError, get_logger
from survey_composer.models import CoverageWarning, FusedCandidate, Metric, Question, SurveyDraft, SurveyRequirement

logger = get_logger("survey_selector")

UNCATEGORIZED = "uncategorized"


def category_cap(requested_count: int, ratio: float) -> int:
    return max(1, math.ceil(requested_count * ratio))


def cross_language_cap(requested_count: int, ratio: float) -> int:
    return max(0, math.ceil(requested_count * ratio))


class SelectionState:
    """Running counters for the items picked so far."""

    def __init__(self, snapshot: CatalogSnapshot, cat_cap: int, cross_cap: int):
        self.snapshot = snapshot
        self.cat_cap = cat_cap
        self.cross_cap = cross_cap
        self.items: List[FusedCandidate] = []
        self.ids: Set[str] = set()
        self.categories: Counter = Counter()
        self.metrics: Counter = Counter()
        self.cross = 0
        self.cross_relaxed = False

    def question(self, fc: FusedCandidate) -> Question:
        return self.snapshot[fc.question_id]

    def category_of(self, fc: FusedCandidate) -> str:
        return self.question(fc).top_category

    def category_allows(self, fc: FusedCandidate, freed: Optional[FusedCandidate] = None) -> bool:
        cat = self.category_of(fc)
        if not cat:
            return True
        count = self.categories[cat]
        if freed is not None and self.category_of(freed) == cat:
            count -= 1
        return count < self.cat_cap

    def cross_allows(self, fc: FusedCandidate, freed: Optional[FusedCandidate] = None) -> bool:
        if not fc.is_cross_language or self.cross_relaxed:
            return True
        count = self.cross - (1 if freed is not None and freed.is_cross_language else 0)
        return count < self.cross_cap

    def add(self, fc: FusedCandidate) -> None:
        q = self.question(fc)
        self.items.append(fc)
        self.ids.add(fc.question_id)
        if q.top_category:
            self.categories[q.top_category] += 1
        for m in q.metric_coverage:
            self.metrics[m] += 1
        if fc.is_cross_language:
            self.cross += 1

    def remove(self, fc: FusedCandidate) -> None:
        q = self.question(fc)
        self.items.remove(fc)
        self.ids.discard(fc.question_id)
        if q.top_category:
            self.categories[q.top_category] -= 1
        for m in q.metric_coverage:
            self.metrics[m] -= 1
        if fc.is_cross_language:
            self.cross -= 1

    def covered(self, metric: Metric) -> bool:
        return self.metrics[metric] > 0

    def removal_uncovers(self, fc: FusedCandidate, targets: Iterable[Metric]) -> bool:
        q = self.question(fc)
        return any(m in q.metric_coverage and self.metrics[m] == 1 for m in targets)


class ConstrainedSelector:
    """Greedy selection with cap relaxation and bounded repair-by-swap."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings.from_env()

    def select(
        self,
        requirement: SurveyRequirement,
        ranked: Sequence[FusedCandidate],
        snapshot: CatalogSnapshot,
    ) -> SurveyDraft:
        n = requirement.requested_count
        pool = [fc for fc in ranked if fc.question_id in snapshot]
        if not pool:
            raise InsufficientCatalogCoverageError(
                f"no candidates found for language '{requirement.language}'", pool_size=0
            )

        state = SelectionState(
            snapshot,
            category_cap(n, self.settings.category_cap_ratio),
            cross_language_cap(n, self.settings.cross_lang_cap_ratio),
        )
        warnings: List[CoverageWarning] = []
        cap_blocked = self._greedy(state, pool, n)

        if len(state.items) < n and self._relax_cross_language(state, pool, n):
            warnings.append(CoverageWarning(
                "cross_language_relaxed",
                requirement.language,
                f"same-language supply exhausted; {state.cross} cross-language items "
                f"exceed the cap of {state.cross_cap}",
            ))

        missing = self._repair(requirement, state, pool, n)
        targets = sorted(requirement.target_metrics, key=lambda m: m.value)
        best_effort = n < len(targets)
        for m in missing:
            warnings.append(CoverageWarning(
                "uncovered_metric",
                m.value,
                (f"best effort: {len(targets)} target metrics for {n} questions; '{m.value}' not covered"
                 if best_effort else f"no candidate covering '{m.value}' could be placed"),
            ))

        if len(state.items) < self.settings.min_viable_items:
            raise InsufficientCatalogCoverageError(
                f"only {len(state.items)} usable questions for requested {n}", pool_size=len(pool)
            )
        if len(state.items) < n:
            warnings.append(CoverageWarning(
                "insufficient_items",
                str(n),
                f"catalog coverage allows {len(state.items)} of {n} requested questions",
            ))
            if cap_blocked:
                warnings.append(CoverageWarning(
                    "category_cap_limited",
                    ",".join(sorted(cap_blocked)),
                    f"categories at the cap of {state.cat_cap} blocked further items",
                ))

        ordered = order_selection(state.items, snapshot)
        draft = build_draft(requirement, ordered, snapshot, warnings)
        logger.debug(
            f"Selected {len(draft)}/{n} (pool={len(pool)}, cross={state.cross}, "
            f"warnings={[w.code for w in warnings]})"
        )
        return draft

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _greedy(self, state: SelectionState, pool: Sequence[FusedCandidate], n: int) -> Set[str]:
        """Take items in rank order while caps allow; returns categories that blocked items."""
        blocked: Set[str] = set()
        for fc in pool:
            if len(state.items) >= n:
                break
            if not state.category_allows(fc):
                blocked.add(state.category_of(fc))
                continue
            if not state.cross_allows(fc):
                continue
            state.add(fc)
        return blocked

    def _relax_cross_language(self, state: SelectionState, pool: Sequence[FusedCandidate], n: int) -> bool:
        """Fill the remaining slots with cross-language items past the cap.

        Runs only after the greedy pass saw the whole pool, so every eligible
        same-language candidate is already selected.
        """
        added = False
        for fc in pool:
            if len(state.items) >= n:
                break
            if fc.question_id in state.ids or not fc.is_cross_language:
                continue
            if not state.category_allows(fc):
                continue
            state.add(fc)
            added = True
        state.cross_relaxed = added
        return added

    def _pick_victim(
        self,
        state: SelectionState,
        incoming: FusedCandidate,
        protected: Sequence[Metric],
    ) -> Optional[FusedCandidate]:
        """Lowest-scoring selected item of the most represented category that can go."""
        options = [
            fc for fc in state.items
            if not state.removal_uncovers(fc, protected)
            and state.category_allows(incoming, freed=fc)
            and state.cross_allows(incoming, freed=fc)
        ]
        if not options:
            return None

        def weight(fc: FusedCandidate) -> Tuple:
            cat = state.category_of(fc)
            return (-(state.categories[cat] if cat else 0), fc.quality_adjusted_score, fc.question_id)

        # heaviest category first, then lowest qas
        return min(options, key=weight)

    def _repair(
        self,
        requirement: SurveyRequirement,
        state: SelectionState,
        pool: Sequence[FusedCandidate],
        n: int,
    ) -> List[Metric]:
        """Swap in candidates for uncovered target metrics; returns metrics still missing."""
        targets = sorted(requirement.target_metrics, key=lambda m: m.value)
        missing = [m for m in targets if not state.covered(m)]
        iterations = 0
        for metric in list(missing):
            if state.covered(metric):
                continue
            if iterations >= self.settings.repair_max_iterations:
                break
            iterations += 1
            protected = [m for m in targets if state.covered(m)]
            for fc in pool:
                if fc.question_id in state.ids:
                    continue
                if metric not in state.question(fc).metric_coverage:
                    continue
                if len(state.items) < n and state.category_allows(fc) and state.cross_allows(fc):
                    state.add(fc)
                    logger.debug(f"Repair added {fc.question_id} for '{metric.value}'")
                    break
                # full draft, or a cap blocks a plain add: swap instead
                victim = self._pick_victim(state, fc, protected)
                if victim is None:
                    continue
                state.remove(victim)
                state.add(fc)
                logger.debug(f"Repair swapped {victim.question_id} -> {fc.question_id} for '{metric.value}'")
                break
        return [m for m in targets if not state.covered(m)]


# ---------------------------------------------------------------------------
# Ordering and draft assembly
# ---------------------------------------------------------------------------

def _group_key(q: Question) -> str:
    if q.theme_path:
        return q.theme_path[0]
    return q.top_category or UNCATEGORIZED


def order_selection(items: Sequence[FusedCandidate], snapshot: CatalogSnapshot) -> List[FusedCandidate]:
    """Group by theme (or category); sensitive groups and items go last."""
    groups: Dict[str, List[FusedCandidate]] = {}
    for fc in items:
        groups.setdefault(_group_key(snapshot[fc.question_id]), []).append(fc)

    def item_key(fc: FusedCandidate) -> Tuple:
        return (snapshot[fc.question_id].sensitivity, -fc.quality_adjusted_score, fc.question_id)

    def group_key(entry: Tuple[str, List[FusedCandidate]]) -> Tuple:
        name, members = entry
        return (
            max(snapshot[fc.question_id].sensitivity for fc in members),
            -max(fc.quality_adjusted_score for fc in members),
            name,
        )

    out: List[FusedCandidate] = []
    for _, members in sorted(groups.items(), key=group_key):
        out.extend(sorted(members, key=item_key))
    return out


def build_draft(
    requirement: SurveyRequirement,
    ordered: Sequence[FusedCandidate],
    snapshot: CatalogSnapshot,
    warnings: Sequence[CoverageWarning] = (),
) -> SurveyDraft:
    coverage: Dict[str, int] = {m.value: 0 for m in requirement.target_metrics}
    categories: Counter = Counter()
    same_language = 0
    for fc in ordered:
        q = snapshot[fc.question_id]
        for m in q.metric_coverage:
            coverage[m.value] = coverage.get(m.value, 0) + 1
        if q.top_category:
            categories[q.top_category] += 1
        if q.language == requirement.language:
            same_language += 1
    ratio = same_language / len(ordered) if ordered else 1.0
    return SurveyDraft(
        question_ids=tuple(fc.question_id for fc in ordered),
        coverage_map=dict(sorted(coverage.items())),
        category_distribution=dict(sorted(categories.items())),
        language_consistency_ratio=ratio,
        coverage_warnings=tuple(warnings),
        requested_count=requirement.requested_count,
        items=tuple(ordered),
        catalog_version=snapshot.version,
    )
