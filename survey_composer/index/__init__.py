"""
Catalog index package.

Usage:
    from survey_composer.index import CatalogIndex, load_questions
"""
from survey_composer.index.catalog import CatalogIndex, CatalogSnapshot, ReloadScheduler
from survey_composer.index.loader import file_source, load_questions

__all__ = ["CatalogIndex", "CatalogSnapshot", "ReloadScheduler", "file_source", "load_questions"]
