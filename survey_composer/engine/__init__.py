"""
Composition engine package.

Usage:
    from survey_composer.engine.pipeline import SurveyComposer
    from survey_composer.engine.config import EngineSettings
"""
