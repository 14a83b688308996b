#!/usr/bin/env python3
"""
Survey composition pipeline.

SurveyComposer wires the stages together as one unit of work per requirement
fingerprint:

    validate -> cache lookup -> single-flight
             -> retrieve (4 channels) -> fuse -> bridge -> select
             -> optional rerank -> cache store

Only InputInvalidError and InsufficientCatalogCoverageError reach callers.
Channel timeouts, reranker failures and reload problems are handled inside.
"""

from __future__ import annotations

import asyncio
import functools
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from survey_composer.cache_manager import DraftCache, get_draft_store
from survey_composer.deduplication import SingleFlight, fingerprint_requirement
from survey_composer.engine.bridge import CrossLanguageBridge
from survey_composer.engine.config import EngineSettings
from survey_composer.engine.embed import embed_requirement
from survey_composer.engine.ranking import fuse
from survey_composer.engine.retrieval import CandidateRetriever
from survey_composer.engine.selector import ConstrainedSelector
from survey_composer.index.catalog import CatalogIndex, CatalogSnapshot
from survey_composer.logger import ContextLogger, InsufficientCatalogCoverageError, RerankError, get_logger, safe_bool
from survey_composer.models import FusedCandidate, SurveyDraft, SurveyRequirement
from survey_composer.reranker import Reranker, apply_rerank

logger = get_logger("survey_pipeline")

_RERANK_EXECUTOR: Optional[ThreadPoolExecutor] = None
_RERANK_LOCK = threading.Lock()


def _get_rerank_executor() -> ThreadPoolExecutor:
    global _RERANK_EXECUTOR
    if _RERANK_EXECUTOR is None:
        with _RERANK_LOCK:
            if _RERANK_EXECUTOR is None:
                _RERANK_EXECUTOR = ThreadPoolExecutor(max_workers=2, thread_name_prefix="survey-rerank")
    return _RERANK_EXECUTOR


class SurveyComposer:
    """Composes SurveyDrafts from requirements against a CatalogIndex."""

    def __init__(
        self,
        index: CatalogIndex,
        settings: Optional[EngineSettings] = None,
        cache: Optional[DraftCache] = None,
        retriever: Optional[CandidateRetriever] = None,
        selector: Optional[ConstrainedSelector] = None,
        reranker: Optional[Reranker] = None,
        embedding_model: Any = None,
        record_usage: Optional[bool] = None,
    ):
        self.index = index
        self.settings = settings or EngineSettings.from_env()
        self.retriever = retriever or CandidateRetriever(self.settings)
        self.bridge = CrossLanguageBridge(self.retriever, self.settings)
        self.selector = selector or ConstrainedSelector(self.settings)
        self.cache = cache or DraftCache(
            current_version=index.current_version,
            default_ttl=self.settings.draft_cache_ttl,
        )
        self.flight = SingleFlight("compose")
        self.reranker = reranker
        self.embedding_model = embedding_model
        if record_usage is None:
            record_usage = safe_bool(
                os.environ.get("SURVEY_RECORD_USAGE"), False, logger=logger, context="SURVEY_RECORD_USAGE"
            )
        self.record_usage = record_usage
        self._lock = threading.Lock()
        self.executions = 0
        index.add_reload_listener(self._on_reload)

    @classmethod
    def with_shared_cache(cls, index: CatalogIndex, **kwargs) -> "SurveyComposer":
        """Composer whose drafts live in the process-wide ``drafts`` cache."""
        settings = kwargs.get("settings") or EngineSettings.from_env()
        kwargs["settings"] = settings
        kwargs["cache"] = DraftCache(
            current_version=index.current_version,
            cache=get_draft_store(),
            default_ttl=settings.draft_cache_ttl,
        )
        return cls(index, **kwargs)

    def _on_reload(self, old_version: str, new_version: str) -> None:
        self.cache.invalidate_by_catalog_version(old_version)

    def close(self) -> None:
        """Stop following catalog reloads."""
        self.index.remove_reload_listener(self._on_reload)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compose(
        self,
        requirement: Union[SurveyRequirement, Mapping[str, Any]],
        use_cache: bool = True,
    ) -> SurveyDraft:
        """Return a draft for ``requirement``, cached or freshly composed.

        Raises:
            InputInvalidError: the requirement fails basic sanity checks.
            InsufficientCatalogCoverageError: no draft can be produced.
        """
        if not isinstance(requirement, SurveyRequirement):
            requirement = SurveyRequirement.from_dict(requirement)
        requirement.validate()
        fp = fingerprint_requirement(requirement)
        log = ContextLogger(logger, fingerprint=fp[:12], language=requirement.language)

        if use_cache:
            entry = self.cache.get(fp)
            if entry is not None:
                log.debug("Draft served from cache", catalog_version=entry.catalog_version)
                return entry.draft

        draft, shared = self.flight.do(fp, functools.partial(self._compute, requirement, fp, use_cache, log))
        if shared:
            log.debug("Draft shared from in-flight computation")
        return draft

    async def compose_async(
        self,
        requirement: Union[SurveyRequirement, Mapping[str, Any]],
        use_cache: bool = True,
    ) -> SurveyDraft:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self.compose, requirement, use_cache))

    def run_pipeline(
        self,
        requirement: SurveyRequirement,
        snapshot: Optional[CatalogSnapshot] = None,
        fingerprint: str = "",
        log: Optional[ContextLogger] = None,
    ) -> SurveyDraft:
        """One uncached pass: retrieve, fuse, bridge, select, rerank."""
        snapshot = snapshot or self.index.snapshot()
        log = log or ContextLogger(logger, fingerprint=fingerprint[:12], language=requirement.language)
        with self._lock:
            self.executions += 1

        embedding = self._embedding(requirement, log)
        primary = self.retriever.retrieve(requirement, snapshot, embedding=embedding)
        ranked = fuse(primary.candidates, snapshot, self.settings)
        outcome = self.bridge.expand(requirement, snapshot, ranked, embedding=embedding)
        if not outcome.ranked:
            raise InsufficientCatalogCoverageError(
                f"no candidates found across all channels (catalog {snapshot.version})", pool_size=0
            )

        draft = self.selector.select(requirement, outcome.ranked, snapshot)
        draft = replace(draft, fingerprint=fingerprint)
        if self.reranker is not None:
            draft = self._rerank(requirement, draft, outcome.ranked, snapshot, log)

        log.info(
            f"Composed {len(draft)}/{requirement.requested_count} questions",
            catalog_version=snapshot.version,
            degraded_channels=primary.timed_out + sorted(primary.failed),
            bridged=outcome.triggered,
            warnings=[w.code for w in draft.coverage_warnings],
        )
        return draft

    def stats(self) -> Dict[str, Any]:
        return {
            "executions": self.executions,
            "catalog_version": self.index.current_version(),
            "cache": self.cache.get_stats(),
            "single_flight": self.flight.get_stats(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compute(self, requirement: SurveyRequirement, fp: str, use_cache: bool, log: ContextLogger) -> SurveyDraft:
        if use_cache:
            # a leader that finished just before we became leader may have stored it
            entry = self.cache.get(fp)
            if entry is not None:
                return entry.draft
        draft = self.run_pipeline(requirement, fingerprint=fp, log=log)
        if use_cache:
            self.cache.set(fp, draft)
        if self.record_usage:
            self.index.record_usage(draft.question_ids)
        return draft

    def _embedding(self, requirement: SurveyRequirement, log: ContextLogger) -> Optional[Sequence[float]]:
        try:
            return embed_requirement(requirement, self.embedding_model)
        except Exception as e:
            log.warning(f"Query embedding failed, semantic channel disabled: {e}")
            return None

    def _rerank(
        self,
        requirement: SurveyRequirement,
        draft: SurveyDraft,
        fused: Sequence[FusedCandidate],
        snapshot: CatalogSnapshot,
        log: ContextLogger,
    ) -> SurveyDraft:
        log = log.bind(stage="rerank")
        fut = _get_rerank_executor().submit(self.reranker.rerank, requirement, draft, fused)
        try:
            proposal = fut.result(timeout=self.settings.rerank_timeout)
            return apply_rerank(requirement, draft, proposal, fused, snapshot, self.settings)
        except FutureTimeout:
            fut.cancel()
            log.warning(f"Reranker timed out after {self.settings.rerank_timeout}s; keeping deterministic draft")
        except RerankError as e:
            log.warning(f"Reranker proposal rejected: {e}")
        except Exception as e:
            log.error(f"Reranker failed: {e}")
        return draft


def build_composer(
    catalog_path: Optional[str] = None,
    settings: Optional[EngineSettings] = None,
    vector_backend: Optional[str] = None,
    rerank: Optional[bool] = None,
    **kwargs,
) -> SurveyComposer:
    """CatalogIndex + SurveyComposer, optionally loaded from a catalog file.

    ``rerank`` (default ``SURVEY_RERANK_ENABLED``) attaches an OpenAIReranker
    unless a ``reranker`` is passed explicitly.
    """
    from survey_composer.engine import config
    from survey_composer.index.loader import load_questions

    index = CatalogIndex(vector_backend=vector_backend or config.VECTOR_BACKEND)
    if catalog_path:
        questions, version = load_questions(catalog_path)
        index.reload(questions, version=version, strict=True)
    if kwargs.get("reranker") is None and (config.RERANK_ENABLED if rerank is None else rerank):
        from survey_composer import reranker as reranker_mod
        kwargs["reranker"] = reranker_mod.OpenAIReranker(index.snapshot)
    return SurveyComposer(index, settings=settings, **kwargs)
