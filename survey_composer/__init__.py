"""
Survey question selection and composition engine.

Usage:
    from survey_composer import CatalogIndex, SurveyComposer, SurveyRequirement

    index = CatalogIndex()
    index.reload(questions)
    draft = SurveyComposer(index).compose(SurveyRequirement.create("tr", 10, ["loyalty"]))
"""
from survey_composer.engine.config import EngineSettings
from survey_composer.engine.pipeline import SurveyComposer, build_composer
from survey_composer.index import CatalogIndex, ReloadScheduler, load_questions
from survey_composer.logger import (
    InputInvalidError,
    InsufficientCatalogCoverageError,
    SurveyEngineError,
)
from survey_composer.models import Metric, Question, SurveyDraft, SurveyRequirement

__all__ = [
    "CatalogIndex", "EngineSettings", "InputInvalidError", "InsufficientCatalogCoverageError",
    "Metric", "Question", "ReloadScheduler", "SurveyComposer", "SurveyDraft", "SurveyEngineError",
    "SurveyRequirement", "build_composer", "load_questions",
]
