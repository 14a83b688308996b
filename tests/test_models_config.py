#!/usr/bin/env python3
"""
Tests for survey_composer/models.py and survey_composer/engine/config.py.

Tests cover:
- Question / SurveyRequirement parsing from normalizer payloads
- Requirement validation (InputInvalidError)
- SurveyDraft helpers
- EngineSettings environment parsing and weight scaling
"""
import pytest

from survey_composer.engine.config import EngineSettings, _parse_language_pairs, _safe_float, _safe_int
from survey_composer.logger import InputInvalidError
from survey_composer.models import (
    Channel,
    CoverageWarning,
    FusedCandidate,
    Metric,
    Question,
    SurveyDraft,
    SurveyRequirement,
)

pytestmark = pytest.mark.unit


# ============================================================================
# Tests: Question
# ============================================================================
class TestQuestion:
    def test_from_dict_camel_case(self):
        q = Question.from_dict({
            "questionId": "q1",
            "lang": "TR",
            "text": "Memnun musunuz?",
            "categoryPath": "culture/pride",
            "themePath": ["belonging"],
            "tags": ["Sadakat", " "],
            "qualityScore": 0.8,
            "metricCoverage": ["Loyalty"],
            "embedding": [1, 0],
            "usageCount": 3,
        })
        assert q.id == "q1"
        assert q.language == "tr"
        assert q.category_path == ("culture", "pride")
        assert q.theme_path == ("belonging",)
        assert q.tags == frozenset({"sadakat"})
        assert q.metric_coverage == frozenset({Metric.LOYALTY})
        assert q.embedding == (1.0, 0.0)
        assert q.usage_count == 3
        assert q.top_category == "culture"

    def test_quality_is_clamped(self):
        q = Question.from_dict({"id": "q", "language": "en", "quality_score": 1.7})
        assert q.quality_score == 1.0

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            Question.from_dict({"language": "en"})

    def test_missing_language_rejected(self):
        with pytest.raises(ValueError):
            Question.from_dict({"id": "q"})

    def test_unknown_metric_rejected(self):
        with pytest.raises(InputInvalidError):
            Question.from_dict({"id": "q", "language": "en", "metrics": ["happiness"]})


# ============================================================================
# Tests: SurveyRequirement
# ============================================================================
class TestSurveyRequirement:
    def test_create_normalizes(self):
        req = SurveyRequirement.create(
            " TR ", 5, ["loyalty", Metric.COMMITMENT], keyword_expansions=["sadakat ", "", "loyalty"],
            industry="retail", category_constraints=["culture", "culture", "career/pay"],
        )
        assert req.language == "tr"
        assert req.target_metrics == frozenset({Metric.LOYALTY, Metric.COMMITMENT})
        assert req.keyword_expansions == frozenset({"sadakat", "loyalty"})
        assert req.category_constraints == (("career", "pay"), ("culture",))

    @pytest.mark.parametrize("count", [0, -3])
    def test_non_positive_count_rejected(self, count):
        with pytest.raises(InputInvalidError):
            SurveyRequirement.create("tr", count)

    def test_empty_language_rejected(self):
        with pytest.raises(InputInvalidError):
            SurveyRequirement.create("  ", 5)

    def test_unknown_metric_rejected(self):
        with pytest.raises(InputInvalidError):
            SurveyRequirement.create("en", 5, ["happiness"])

    def test_from_dict_bad_count(self):
        with pytest.raises(InputInvalidError):
            SurveyRequirement.from_dict({"language": "en", "requestedCount": "many"})

    def test_from_dict_camel_case(self):
        req = SurveyRequirement.from_dict({
            "language": "en",
            "requestedCount": 7,
            "targetMetrics": ["satisfaction"],
            "keywordExpansions": ["pay"],
            "categoryConstraints": ["career"],
        })
        assert req.requested_count == 7
        assert req.target_metrics == frozenset({Metric.SATISFACTION})
        assert req.category_constraints == (("career",),)

    def test_query_terms_sorted_with_industry_last(self):
        req = SurveyRequirement.create("en", 3, keyword_expansions=["pay", "culture"], industry="retail")
        assert req.query_terms() == ["culture", "pay", "retail"]


# ============================================================================
# Tests: SurveyDraft
# ============================================================================
class TestSurveyDraft:
    def test_helpers_and_to_dict(self):
        items = (
            FusedCandidate("a", 0.5, frozenset({Channel.EXACT}), 0.4),
            FusedCandidate("b", 0.4, frozenset({Channel.SEMANTIC}), 0.3, is_cross_language=True,
                           translation_confidence=0.9, language="en"),
        )
        draft = SurveyDraft(
            question_ids=("a", "b"),
            coverage_map={"loyalty": 1},
            category_distribution={"culture": 2},
            language_consistency_ratio=0.5,
            coverage_warnings=(CoverageWarning("uncovered_metric", "commitment", "none"),),
            requested_count=3,
            items=items,
        )
        assert len(draft) == 2
        assert not draft.is_complete
        assert draft.cross_language_ids == ("b",)
        data = draft.to_dict()
        assert data["question_ids"] == ["a", "b"]
        assert data["coverage_warnings"][0]["code"] == "uncovered_metric"
        assert data["items"][1]["is_cross_language"] is True
        assert data["items"][0]["channels"] == ["exact"]


# ============================================================================
# Tests: Configuration
# ============================================================================
class TestEngineSettings:
    def test_defaults(self):
        s = EngineSettings.from_env({})
        assert s.weights == {"exact": 0.30, "filter": 0.15, "text": 0.25, "semantic": 0.30}
        assert s.quality_blend == 0.5
        assert s.language_mismatch_penalty == 0.85
        assert s.paired_language("tr") == "en"
        assert s.paired_language("en") == "tr"
        assert s.paired_language("de") is None
        assert s.headroom_limit(5) == 20

    def test_env_overrides(self):
        s = EngineSettings.from_env({
            "SURVEY_WEIGHT_TEXT": "0.5",
            "SURVEY_CHANNEL_TIMEOUT": "1.5",
            "SURVEY_CHANNEL_TIMEOUT_SEMANTIC": "0.2",
            "SURVEY_LANGUAGE_PAIRS": "de:en",
            "SURVEY_REPAIR_MAX_ITERATIONS": "bogus",
        })
        assert s.weights["text"] == 0.5
        assert s.timeout_for("semantic") == 0.2
        assert s.timeout_for("exact") == 1.5
        assert s.paired_language("de") == "en"
        assert s.repair_max_iterations == 5

    def test_effective_weights_scaled_once_when_sum_exceeds_one(self):
        s = EngineSettings(weights={"exact": 1.0, "filter": 1.0, "text": 1.0, "semantic": 1.0})
        w = s.effective_weights()
        assert sum(w.values()) == pytest.approx(1.0)
        assert w["exact"] == pytest.approx(0.25)

    def test_effective_weights_untouched_below_one(self):
        s = EngineSettings(weights={"exact": 0.2, "filter": -1.0})
        assert s.effective_weights() == {"exact": 0.2, "filter": 0.0}

    def test_parse_language_pairs(self):
        assert _parse_language_pairs("tr:en, bad, x:x") == {"tr": "en", "en": "tr"}
        assert _parse_language_pairs(None) == {}

    def test_safe_parsers(self):
        assert _safe_int("7", 1) == 7
        assert _safe_int("", 1) == 1
        assert _safe_float("x", 0.5) == 0.5
