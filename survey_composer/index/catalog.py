#!/usr/bin/env python3
"""
Catalog index: versioned, immutable snapshots of the question catalog.

A snapshot carries four read-only structures built once at reload time:

1. exact-key lookup   - question name / category id / theme id / tag -> ids
2. attribute filter   - category prefix x theme prefix x quality range -> ids
3. inverted text      - BM25 postings per language
4. vector index       - cosine nearest neighbours over shared embeddings

``CatalogIndex`` owns the pointer to the active snapshot. A reload builds the
next snapshot completely off to the side and swaps the pointer under a lock;
readers keep whatever snapshot reference they obtained, so nobody ever sees a
half-built index. A failed or empty reload leaves the previous snapshot active.
"""

__all__ = [
    "CatalogSnapshot", "CatalogIndex", "ReloadScheduler", "UsageCounter",
    "exact_key", "catalog_version_for", "EMPTY_VERSION",
]

import bisect
import hashlib
import json
import os
import threading
import time
import unicodedata
import weakref
from collections import defaultdict
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from survey_composer.index.text import InvertedIndex
from survey_composer.index.vector import build_vector_index
from survey_composer.logger import IndexReloadError, get_logger, safe_float
from survey_composer.models import Metric, Question

logger = get_logger("survey_catalog")

EMPTY_VERSION = "empty"


def exact_key(value: str) -> str:
    """Accent- and case-folded key for exact matching across tr/en spellings."""
    s = unicodedata.normalize("NFKD", str(value or "").replace("ı", "i").replace("I", "i"))
    s = "".join(ch for ch in s if not unicodedata.combining(ch)).lower()
    s = s.replace("_", " ").replace("-", " ")
    return " ".join(s.split())


def catalog_version_for(questions: Sequence[Question]) -> str:
    """Content hash of a question list, independent of input order."""
    h = hashlib.sha256()
    for q in sorted(questions, key=lambda x: x.id):
        h.update(json.dumps([
            q.id, q.language, q.text, list(q.category_path), list(q.theme_path),
            sorted(q.tags), round(q.quality_score, 6), sorted(m.value for m in q.metric_coverage),
            q.sensitivity, q.name, len(q.embedding),
        ], ensure_ascii=False).encode("utf-8"))
    return h.hexdigest()[:16]


class UsageCounter:
    """Live usage counters shared by consecutive snapshots.

    The only catalog state the engine writes; updates are not read-after-write
    critical.
    """

    def __init__(self):
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def seed(self, questions: Iterable[Question]) -> None:
        with self._lock:
            for q in questions:
                self._counts[q.id] = max(self._counts.get(q.id, 0), int(q.usage_count))

    def get(self, question_id: str) -> int:
        return self._counts.get(question_id, 0)

    def increment(self, question_ids: Iterable[str]) -> None:
        with self._lock:
            for qid in question_ids:
                self._counts[qid] = self._counts.get(qid, 0) + 1


class CatalogSnapshot:
    """Immutable, fully-built indexes over one catalog version."""

    def __init__(
        self,
        questions: Sequence[Question],
        version: str,
        usage: Optional[UsageCounter] = None,
        vector_backend: str = "numpy",
    ):
        self.version = version
        self.created_at = time.time()
        self.usage = usage or UsageCounter()
        self._questions: Dict[str, Question] = {}
        for q in questions:
            if q.id in self._questions:
                raise IndexReloadError(f"duplicate question id {q.id!r}")
            if not (0.0 <= q.quality_score <= 1.0):
                raise IndexReloadError(f"quality_score out of range for {q.id!r}: {q.quality_score}")
            self._questions[q.id] = q

        by_lang: Dict[str, List[str]] = defaultdict(list)
        exact: Dict[str, Set[str]] = defaultdict(set)
        cat_prefix: Dict[Tuple[str, ...], Set[str]] = defaultdict(set)
        theme_prefix: Dict[Tuple[str, ...], Set[str]] = defaultdict(set)
        by_metric: Dict[Metric, Set[str]] = defaultdict(set)
        text_parts: Dict[str, InvertedIndex] = {}

        for qid in sorted(self._questions):
            q = self._questions[qid]
            by_lang[q.language].append(qid)
            keys = [q.name, *q.category_path, *q.theme_path, *q.tags]
            for k in keys:
                kk = exact_key(k)
                if kk:
                    exact[kk].add(qid)
            for i in range(len(q.category_path) + 1):
                cat_prefix[q.category_path[:i]].add(qid)
            for i in range(len(q.theme_path) + 1):
                theme_prefix[q.theme_path[:i]].add(qid)
            for m in q.metric_coverage:
                by_metric[m].add(qid)
            idx = text_parts.get(q.language)
            if idx is None:
                idx = text_parts[q.language] = InvertedIndex(q.language)
            idx.add(qid, [q.text, q.name, " ".join(sorted(q.tags))])

        self._by_language: Dict[str, Tuple[str, ...]] = {k: tuple(v) for k, v in by_lang.items()}
        self._exact: Dict[str, FrozenSet[str]] = {k: frozenset(v) for k, v in exact.items()}
        self._category_prefix = {k: frozenset(v) for k, v in cat_prefix.items()}
        self._theme_prefix = {k: frozenset(v) for k, v in theme_prefix.items()}
        self._by_metric = {k: frozenset(v) for k, v in by_metric.items()}
        self._quality_sorted: List[Tuple[float, str]] = sorted(
            (q.quality_score, q.id) for q in self._questions.values()
        )
        self._quality_keys = [x[0] for x in self._quality_sorted]
        self._text = {lang: idx.finalize() for lang, idx in text_parts.items()}
        self._vector = build_vector_index(list(self._questions.values()), backend=vector_backend, version=version)

    @classmethod
    def empty(cls) -> "CatalogSnapshot":
        return cls([], EMPTY_VERSION)

    # ------------------------------------------------------------------
    # Basic accessors
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._questions)

    def __contains__(self, question_id: str) -> bool:
        return question_id in self._questions

    def get(self, question_id: str) -> Optional[Question]:
        return self._questions.get(question_id)

    def __getitem__(self, question_id: str) -> Question:
        return self._questions[question_id]

    @property
    def languages(self) -> List[str]:
        return sorted(self._by_language)

    def ids_for_language(self, language: str) -> Tuple[str, ...]:
        return self._by_language.get(language, ())

    def usage_count(self, question_id: str) -> int:
        return self.usage.get(question_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def lookup_exact(self, tokens: Iterable[str], language: Optional[str] = None) -> List[str]:
        """Ids whose name, category id, theme id or tag equals any token."""
        hits: Set[str] = set()
        for tok in tokens:
            hits.update(self._exact.get(exact_key(tok), ()))
        if language is not None:
            hits = {h for h in hits if self._questions[h].language == language}
        return sorted(hits)

    def lookup_filtered(
        self,
        category_path: Sequence[str] = (),
        theme_path: Sequence[str] = (),
        min_quality: float = 0.0,
        metrics: Optional[Iterable[Metric]] = None,
        language: Optional[str] = None,
    ) -> List[str]:
        """Ids under a category prefix and theme prefix with quality >= min_quality.

        ``metrics`` narrows to questions covering at least one of them.
        """
        by_cat = self._category_prefix.get(tuple(category_path), frozenset())
        by_theme = self._theme_prefix.get(tuple(theme_path), frozenset())
        hits = by_cat & by_theme
        if not hits:
            return []
        start = bisect.bisect_left(self._quality_keys, float(min_quality))
        by_quality = {qid for _, qid in self._quality_sorted[start:]}
        hits = hits & by_quality
        if metrics is not None:
            metric_ids: Set[str] = set()
            for m in metrics:
                metric_ids.update(self._by_metric.get(m, ()))
            hits = hits & metric_ids
        if language is not None:
            hits = {h for h in hits if self._questions[h].language == language}
        return sorted(hits)

    def search_text(self, query: str | Iterable[str], lang: Optional[str] = None, limit: Optional[int] = None) -> List[Tuple[str, float]]:
        """BM25 search; ``lang=None`` searches every language partition."""
        if lang is not None:
            idx = self._text.get(lang)
            return idx.search(query, limit=limit) if idx is not None else []
        merged: List[Tuple[str, float]] = []
        for idx in self._text.values():
            merged.extend(idx.search(query))
        merged.sort(key=lambda x: (-x[1], x[0]))
        return merged[:limit] if limit is not None else merged

    def search_vector(self, embedding: Sequence[float], k: int, language: Optional[str] = None) -> List[Tuple[str, float]]:
        return self._vector.search(embedding, k, language=language)

    @property
    def embedding_dim(self) -> int:
        return int(getattr(self._vector, "dim", 0) or 0)

    def release(self) -> None:
        drop = getattr(self._vector, "drop", None)
        if callable(drop):
            drop()

    def stats(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "questions": len(self._questions),
            "languages": {lang: len(ids) for lang, ids in sorted(self._by_language.items())},
            "categories": sorted({k[0] for k in self._category_prefix if len(k) == 1}),
            "metrics": {m.value: len(ids) for m, ids in sorted(self._by_metric.items(), key=lambda kv: kv[0].value)},
            "embedding_dim": self.embedding_dim,
            "vectors": len(self._vector),
        }


class CatalogIndex:
    """Holder of the active snapshot; reload swaps it atomically."""

    def __init__(self, vector_backend: str = "numpy"):
        self.vector_backend = vector_backend
        self.usage = UsageCounter()
        self._snapshot = CatalogSnapshot([], EMPTY_VERSION, usage=self.usage)
        self._swap_lock = threading.Lock()
        self._reload_lock = threading.Lock()
        self._listeners: List[Callable[[], Optional[Callable[[str, str], None]]]] = []
        self._listeners_lock = threading.Lock()
        self._retired: Optional[CatalogSnapshot] = None
        self.last_reload_error: Optional[BaseException] = None
        self.last_reload_at: Optional[float] = None

    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    def current_version(self) -> str:
        return self._snapshot.version

    def add_reload_listener(self, fn: Callable[[str, str], None]) -> None:
        """Register fn(old_version, new_version), called after a successful swap.

        Bound methods are held weakly, so a discarded owner drops out.
        """
        if hasattr(fn, "__self__") and hasattr(fn, "__func__"):
            ref: Callable[[], Optional[Callable[[str, str], None]]] = weakref.WeakMethod(fn)
        else:
            ref = lambda fn=fn: fn
        with self._listeners_lock:
            self._listeners.append(ref)

    def remove_reload_listener(self, fn: Callable[[str, str], None]) -> None:
        with self._listeners_lock:
            self._listeners = [ref for ref in self._listeners if ref() not in (None, fn)]

    @property
    def listener_count(self) -> int:
        with self._listeners_lock:
            return sum(1 for ref in self._listeners if ref() is not None)

    def reload(self, questions: Iterable[Question], version: Optional[str] = None, strict: bool = False) -> str:
        """Build a new snapshot and swap it in; returns the active version.

        On failure the previous snapshot stays active. The error is logged and
        kept in ``last_reload_error``; it is raised only when ``strict`` is set.
        """
        with self._reload_lock:
            try:
                qs = list(questions)
                if not qs:
                    raise IndexReloadError("catalog source returned no questions")
                new_version = version or catalog_version_for(qs)
                if new_version == self._snapshot.version:
                    logger.debug(f"Catalog version {new_version} already active")
                    self.last_reload_error = None
                    return new_version
                self.usage.seed(qs)
                fresh = CatalogSnapshot(qs, new_version, usage=self.usage, vector_backend=self.vector_backend)
            except Exception as e:
                self.last_reload_error = e
                logger.error(
                    f"Catalog reload failed, keeping version {self._snapshot.version}: {e}",
                    exc_info=not isinstance(e, IndexReloadError),
                )
                if strict:
                    if isinstance(e, IndexReloadError):
                        raise
                    raise IndexReloadError(str(e)) from e
                return self._snapshot.version

            with self._swap_lock:
                old = self._snapshot
                self._snapshot = fresh
            # external vector collections are dropped one reload after retirement
            if self._retired is not None:
                self._retired.release()
            self._retired = old
            self.last_reload_error = None
            self.last_reload_at = time.time()
            logger.info(f"Catalog reloaded: {old.version} -> {fresh.version} ({len(fresh)} questions)")

        with self._listeners_lock:
            self._listeners = [ref for ref in self._listeners if ref() is not None]
            listeners = [ref() for ref in self._listeners]
        for fn in listeners:
            if fn is None:
                continue
            try:
                fn(old.version, fresh.version)
            except Exception as e:
                logger.error(f"Reload listener failed: {e}")
        return fresh.version

    def record_usage(self, question_ids: Iterable[str]) -> None:
        self.usage.increment(question_ids)


class ReloadScheduler:
    """Periodically pulls a catalog from a source callable and reloads.

    A failed cycle leaves the active snapshot untouched; the next cycle simply
    tries again.
    """

    def __init__(
        self,
        index: CatalogIndex,
        source: Callable[[], Any],
        interval: Optional[float] = None,
    ):
        self.index = index
        self.source = source
        if interval is None:
            interval = safe_float(
                os.environ.get("SURVEY_RELOAD_INTERVAL"), 300.0, logger=logger, context="SURVEY_RELOAD_INTERVAL"
            )
        self.interval = float(interval)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.cycles = 0
        self.failures = 0

    def run_once(self) -> str:
        """One reload cycle. ``source`` returns questions or (questions, version)."""
        self.cycles += 1
        try:
            loaded = self.source()
        except Exception as e:
            self.failures += 1
            self.index.last_reload_error = e
            logger.error(f"Catalog source failed: {e}")
            return self.index.current_version()
        version = None
        if isinstance(loaded, tuple) and len(loaded) == 2:
            loaded, version = loaded
        before = self.index.last_reload_error
        active = self.index.reload(loaded, version=version)
        if self.index.last_reload_error is not None and self.index.last_reload_error is not before:
            self.failures += 1
        return active

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)

    def start(self) -> "ReloadScheduler":
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="catalog-reload", daemon=True)
            self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
