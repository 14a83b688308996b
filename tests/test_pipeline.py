#!/usr/bin/env python3
"""
End-to-end tests for SurveyComposer.

Tests cover:
- Composition from requirements and raw payloads, input validation
- Draft cache hits, bypass, staleness after reload
- Single-flight collapsing of concurrent identical requests
- Cross-language bridge and relaxation through the whole pipeline
- Degraded channels and optional reranking (accepted, rejected, timed out)
- Usage recording, shared caches and build_composer
"""
import asyncio
import json
import threading
import time

import pytest

from survey_composer.engine.config import EngineSettings
from survey_composer.engine.pipeline import SurveyComposer, build_composer
from survey_composer.engine.retrieval import CandidateRetriever
from survey_composer.index.catalog import CatalogIndex
from survey_composer.logger import InputInvalidError, InsufficientCatalogCoverageError
from survey_composer.models import Channel, SurveyRequirement

pytestmark = pytest.mark.unit


@pytest.fixture
def composer(catalog_index, settings):
    return SurveyComposer(catalog_index, settings=settings)


@pytest.fixture
def requirement():
    return SurveyRequirement.create(
        "tr", 5, ["loyalty", "satisfaction"],
        keyword_expansions=["sadakat", "memnuniyet", "loyalty", "satisfaction"],
        embedding=[1.0, 0.4, 0.0, 0.0],
    )


class ReversingReranker:
    def __init__(self):
        self.calls = 0

    def rerank(self, requirement, draft, fused):
        self.calls += 1
        return list(reversed(draft.question_ids))


# ============================================================================
# Tests: Composition
# ============================================================================
class TestCompose:
    def test_compose_basic(self, composer, requirement):
        draft = composer.compose(requirement)
        assert len(draft) == 5
        assert len(set(draft.question_ids)) == 5
        assert draft.coverage_map["loyalty"] >= 1
        assert draft.coverage_map["satisfaction"] >= 1
        assert draft.coverage_warnings == ()
        assert draft.language_consistency_ratio == 1.0
        assert draft.catalog_version == "v1"
        assert len(draft.fingerprint) == 64
        assert max(draft.category_distribution.values()) <= 2
        assert not draft.reranked

    def test_compose_from_payload(self, composer):
        draft = composer.compose({
            "language": "en",
            "requestedCount": 3,
            "targetMetrics": ["wellbeing"],
            "keywordExpansions": ["balance", "stress"],
        })
        assert len(draft) == 3
        assert draft.coverage_map["wellbeing"] >= 1
        assert all(qid.startswith("en-") for qid in draft.question_ids)

    @pytest.mark.parametrize("payload", [
        {"language": "tr", "requestedCount": 0},
        {"language": "", "requestedCount": 3},
        {"language": "tr", "requestedCount": 3, "targetMetrics": ["happiness"]},
    ])
    def test_invalid_input(self, composer, payload):
        with pytest.raises(InputInvalidError):
            composer.compose(payload)
        assert composer.executions == 0

    def test_empty_catalog(self, settings):
        composer = SurveyComposer(CatalogIndex(), settings=settings)
        with pytest.raises(InsufficientCatalogCoverageError):
            composer.compose(SurveyRequirement.create("tr", 3, keyword_expansions=["sadakat"]))

    def test_deterministic_across_composers(self, catalog_index, settings, requirement):
        first = SurveyComposer(catalog_index, settings=settings).compose(requirement)
        second = SurveyComposer(catalog_index, settings=settings).compose(requirement, use_cache=False)
        assert first.question_ids == second.question_ids
        assert first.coverage_map == second.coverage_map

    def test_compose_async(self, composer, requirement):
        draft = asyncio.run(composer.compose_async(requirement))
        assert len(draft) == 5

    def test_sensitive_questions_late(self, composer):
        draft = composer.compose(SurveyRequirement.create(
            "en", 4, ["wellbeing"], keyword_expansions=["stress", "balance", "trust"],
        ))
        snapshot = composer.index.snapshot()
        groups = {}
        for qid in draft.question_ids:
            q = snapshot[qid]
            groups.setdefault(q.theme_path[0], []).append(q.sensitivity)
        for values in groups.values():
            assert values == sorted(values)
        assert len(draft) == 4


# ============================================================================
# Tests: Cache and single-flight
# ============================================================================
class TestCaching:
    def test_cache_hit(self, composer, requirement):
        first = composer.compose(requirement)
        second = composer.compose(requirement)
        assert second is first
        assert composer.executions == 1

    def test_equivalent_requirement_hits_cache(self, composer, requirement):
        composer.compose(requirement)
        reordered = SurveyRequirement.create(
            "TR", 5, ["satisfaction", "loyalty"],
            keyword_expansions=["satisfaction", "loyalty", "memnuniyet", "sadakat"],
            embedding=[1.0, 0.4, 0.0, 0.0],
        )
        composer.compose(reordered)
        assert composer.executions == 1

    def test_bypass_cache(self, composer, requirement):
        composer.compose(requirement)
        composer.compose(requirement, use_cache=False)
        assert composer.executions == 2

    def test_reload_invalidates_drafts(self, composer, requirement, bilingual_questions):
        before = composer.compose(requirement)
        assert len(composer.cache) == 1

        composer.index.reload(bilingual_questions, version="v2")
        assert len(composer.cache) == 0

        after = composer.compose(requirement)
        assert composer.executions == 2
        assert after.catalog_version == "v2"
        assert after.question_ids == before.question_ids

    def test_concurrent_identical_requests_share_one_run(self, composer, requirement, monkeypatch):
        gate = threading.Event()
        original = composer.run_pipeline

        def gated(*args, **kwargs):
            gate.wait(5)
            return original(*args, **kwargs)

        monkeypatch.setattr(composer, "run_pipeline", gated)
        results = []
        threads = [threading.Thread(target=lambda: results.append(composer.compose(requirement))) for _ in range(8)]
        for t in threads:
            t.start()

        deadline = time.time() + 5
        while composer.flight.get_stats()["shared"] < 7 and time.time() < deadline:
            time.sleep(0.01)
        gate.set()
        for t in threads:
            t.join(10)

        assert composer.executions == 1
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_shared_cache_between_composers(self, catalog_index, settings, requirement):
        a = SurveyComposer.with_shared_cache(catalog_index, settings=settings)
        b = SurveyComposer.with_shared_cache(catalog_index, settings=settings)
        draft = a.compose(requirement)
        assert b.compose(requirement) is draft
        assert b.executions == 0

    def test_stats(self, composer, requirement):
        composer.compose(requirement)
        composer.compose(requirement)
        stats = composer.stats()
        assert stats["executions"] == 1
        assert stats["catalog_version"] == "v1"
        assert stats["cache"]["hits"] == 1


# ============================================================================
# Tests: Cross-language behavior
# ============================================================================
class TestCrossLanguagePipeline:
    def test_bridge_respects_cap(self, composer):
        draft = composer.compose(SurveyRequirement.create(
            "tr", 8, ["loyalty"], keyword_expansions=["sadakat", "loyalty"], embedding=[1, 0, 0, 0],
        ))
        assert len(draft) == 8
        assert len(draft.cross_language_ids) <= 2
        assert "cross_language_relaxed" not in [w.code for w in draft.coverage_warnings]
        assert draft.language_consistency_ratio >= 0.75

    def test_relaxation_when_requested_language_is_thin(self, question_factory, settings):
        questions = [
            question_factory("t1", "tr", category="A", quality=0.9),
            question_factory("t2", "tr", category="B", quality=0.8),
        ]
        questions += [
            question_factory(f"e{i}", "en", category=f"E{i}", quality=0.7) for i in range(1, 7)
        ]
        index = CatalogIndex()
        index.reload(questions, version="thin", strict=True)
        draft = SurveyComposer(index, settings=settings).compose(SurveyRequirement.create("tr", 5))

        assert len(draft) == 5
        assert {"t1", "t2"} <= set(draft.question_ids)
        assert len(draft.cross_language_ids) == 3
        assert [w.code for w in draft.coverage_warnings] == ["cross_language_relaxed"]
        assert draft.language_consistency_ratio == pytest.approx(0.4)


# ============================================================================
# Tests: Degradation and reranking
# ============================================================================
class TestDegradation:
    def test_semantic_timeout_still_composes(self, catalog_index, requirement):
        release = threading.Event()

        def slow(*args):
            release.wait(5)
            return []

        s = EngineSettings.from_env({"SURVEY_CHANNEL_TIMEOUT_SEMANTIC": "0.05"})
        retriever = CandidateRetriever(s, channels={Channel.SEMANTIC: slow})
        composer = SurveyComposer(catalog_index, settings=s, retriever=retriever)
        try:
            draft = composer.compose(requirement)
        finally:
            release.set()
        assert len(draft) == 5

    def test_hung_semantic_channel_across_many_requests(self, catalog_index, requirement):
        from concurrent.futures import ThreadPoolExecutor

        release = threading.Event()

        def hung(*args):
            release.wait(10)
            return []

        s = EngineSettings.from_env({
            "SURVEY_CHANNEL_TIMEOUT_SEMANTIC": "0.05",
            "SURVEY_RETRIEVAL_WORKERS": "4",
            "SURVEY_SEMANTIC_WORKERS": "2",
        })
        pool, semantic_pool = ThreadPoolExecutor(max_workers=4), ThreadPoolExecutor(max_workers=2)
        retriever = CandidateRetriever(
            s, executor=pool, semantic_executor=semantic_pool, channels={Channel.SEMANTIC: hung},
        )
        composer = SurveyComposer(catalog_index, settings=s, retriever=retriever)
        try:
            drafts = [composer.compose(requirement, use_cache=False) for _ in range(12)]
        finally:
            release.set()
            pool.shutdown(wait=False)
            semantic_pool.shutdown(wait=False)
        assert all(len(d) == 5 for d in drafts)
        assert len({d.question_ids for d in drafts}) == 1

    def test_rerank_accepted_and_cached(self, catalog_index, settings, requirement):
        reranker = ReversingReranker()
        composer = SurveyComposer(catalog_index, settings=settings, reranker=reranker)
        baseline = SurveyComposer(catalog_index, settings=settings).compose(requirement, use_cache=False)

        draft = composer.compose(requirement)
        assert draft.reranked
        assert draft.question_ids == tuple(reversed(baseline.question_ids))
        assert draft.fingerprint == baseline.fingerprint

        assert composer.compose(requirement) is draft
        assert reranker.calls == 1

    @pytest.mark.parametrize("proposal", [
        lambda draft: list(draft.question_ids[:-1]),
        lambda draft: [draft.question_ids[0]] * len(draft),
        lambda draft: ["nope"] + list(draft.question_ids[1:]),
    ])
    def test_rerank_rejected_keeps_draft(self, catalog_index, settings, requirement, proposal):
        class BadReranker:
            def rerank(self, requirement, draft, fused):
                return proposal(draft)

        composer = SurveyComposer(catalog_index, settings=settings, reranker=BadReranker())
        draft = composer.compose(requirement)
        assert not draft.reranked
        assert len(draft) == 5

    def test_rerank_exception_keeps_draft(self, catalog_index, settings, requirement):
        class Broken:
            def rerank(self, requirement, draft, fused):
                raise ConnectionError("llm unreachable")

        draft = SurveyComposer(catalog_index, settings=settings, reranker=Broken()).compose(requirement)
        assert not draft.reranked

    def test_rerank_timeout_keeps_draft(self, catalog_index, requirement):
        release = threading.Event()

        class Slow:
            def rerank(self, requirement, draft, fused):
                release.wait(5)
                return list(draft.question_ids)

        s = EngineSettings.from_env({"RERANK_TIMEOUT": "0.05"})
        try:
            draft = SurveyComposer(catalog_index, settings=s, reranker=Slow()).compose(requirement)
        finally:
            release.set()
        assert not draft.reranked
        assert len(draft) == 5


# ============================================================================
# Tests: Usage and construction
# ============================================================================
class TestUsageAndConstruction:
    def test_usage_not_recorded_by_default(self, composer, requirement):
        draft = composer.compose(requirement)
        assert all(composer.index.snapshot().usage_count(q) == 0 for q in draft.question_ids)

    def test_usage_recorded_when_enabled(self, catalog_index, settings, requirement):
        composer = SurveyComposer(catalog_index, settings=settings, record_usage=True)
        draft = composer.compose(requirement)
        assert all(catalog_index.snapshot().usage_count(q) == 1 for q in draft.question_ids)

    def test_build_composer_from_file(self, tmp_path, settings):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({
            "version": "file-1",
            "questions": [
                {"id": f"q{i}", "language": "en", "text": f"Question about pay {i}",
                 "category": f"c{i % 3}", "metrics": ["satisfaction"], "quality_score": 0.8}
                for i in range(6)
            ],
        }), encoding="utf-8")
        composer = build_composer(str(path), settings=settings)
        assert composer.index.current_version() == "file-1"
        draft = composer.compose(SurveyRequirement.create("en", 3, ["satisfaction"], keyword_expansions=["pay"]))
        assert len(draft) == 3
        assert draft.catalog_version == "file-1"

    def test_build_composer_reranker_from_env(self, monkeypatch, settings):
        import survey_composer.engine.config as config
        import survey_composer.reranker as reranker_mod

        class StubReranker:
            def __init__(self, snapshot_provider):
                self.snapshot_provider = snapshot_provider

            def rerank(self, requirement, draft, fused):
                return list(draft.question_ids)

        monkeypatch.setattr(reranker_mod, "OpenAIReranker", StubReranker)
        monkeypatch.setattr(config, "RERANK_ENABLED", True)
        composer = build_composer(settings=settings)
        assert isinstance(composer.reranker, StubReranker)
        assert composer.reranker.snapshot_provider() is composer.index.snapshot()

        assert build_composer(settings=settings, rerank=False).reranker is None
        explicit = ReversingReranker()
        assert build_composer(settings=settings, reranker=explicit).reranker is explicit

        monkeypatch.setattr(config, "RERANK_ENABLED", False)
        assert build_composer(settings=settings).reranker is None

    def test_reload_listener_released(self, catalog_index, settings):
        import gc

        before = catalog_index.listener_count
        closed = SurveyComposer(catalog_index, settings=settings)
        assert catalog_index.listener_count == before + 1
        closed.close()
        assert catalog_index.listener_count == before

        dropped = SurveyComposer(catalog_index, settings=settings)
        assert catalog_index.listener_count == before + 1
        del dropped
        gc.collect()
        assert catalog_index.listener_count == before
