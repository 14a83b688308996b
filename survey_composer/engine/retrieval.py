#!/usr/bin/env python3
"""
Candidate retrieval: four independent channels fanned out in parallel.

- exact:    keyword / industry tokens against names, category ids, theme ids, tags
- filter:   category constraints x quality floor, metric-covering items first
- text:     BM25 over keywords, industry and metric names, max-normalized
- semantic: cosine similarity of the requirement embedding, clipped to [0, 1]

The in-memory channels share one query executor; the semantic channel, which
may call an external vector store, gets its own. Each channel has its own
timeout. A channel that times out or raises contributes an empty list; the
request goes on with whatever the other channels returned. A timed-out call
that is still running counts as a straggler, and a channel with
``channel_max_stragglers`` of them is skipped until they finish.
"""

__all__ = [
    "CandidateRetriever", "RetrievalResult", "ChannelFn",
    "exact_channel", "filter_channel", "text_channel", "semantic_channel",
    "_get_query_executor", "_get_semantic_executor",
]

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from survey_composer.engine.config import EngineSettings
from survey_composer.index.catalog import CatalogSnapshot
from survey_composer.logger import ChannelTimeoutError, get_logger
from survey_composer.models import Candidate, Channel, SurveyRequirement

logger = get_logger("survey_retrieval")

# fn(requirement, snapshot, language, limit, embedding, settings) -> [(id, score)]
ChannelFn = Callable[
    [SurveyRequirement, CatalogSnapshot, str, int, Optional[Sequence[float]], EngineSettings],
    List[Tuple[str, float]],
]

# ---------------------------------------------------------------------------
# Shared executor
# ---------------------------------------------------------------------------

_QUERY_EXECUTOR: Optional[ThreadPoolExecutor] = None
_SEMANTIC_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()


def _get_query_executor(max_workers: int = 8) -> ThreadPoolExecutor:
    """Get or create a shared ThreadPoolExecutor for channel fan-out."""
    global _QUERY_EXECUTOR
    if _QUERY_EXECUTOR is None:
        with _EXECUTOR_LOCK:
            if _QUERY_EXECUTOR is None:
                _QUERY_EXECUTOR = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="survey-channel")
    return _QUERY_EXECUTOR


def _get_semantic_executor(max_workers: int = 4) -> ThreadPoolExecutor:
    """Get or create the executor reserved for the semantic channel."""
    global _SEMANTIC_EXECUTOR
    if _SEMANTIC_EXECUTOR is None:
        with _EXECUTOR_LOCK:
            if _SEMANTIC_EXECUTOR is None:
                _SEMANTIC_EXECUTOR = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="survey-semantic")
    return _SEMANTIC_EXECUTOR


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

def _by_quality(snapshot: CatalogSnapshot, ids: Sequence[str]) -> List[str]:
    return sorted(ids, key=lambda qid: (-snapshot[qid].quality_score, qid))


def exact_channel(requirement, snapshot, language, limit, embedding, settings):
    tokens = requirement.query_terms()
    if not tokens:
        return []
    ids = _by_quality(snapshot, snapshot.lookup_exact(tokens, language=language))
    return [(qid, 1.0) for qid in ids[:limit]]


def filter_channel(requirement, snapshot, language, limit, embedding, settings):
    prefixes = requirement.category_constraints or ((),)
    hits: set = set()
    covering: set = set()
    for prefix in prefixes:
        hits.update(snapshot.lookup_filtered(prefix, (), settings.min_filter_quality, language=language))
        if requirement.target_metrics:
            covering.update(snapshot.lookup_filtered(
                prefix, (), settings.min_filter_quality,
                metrics=requirement.target_metrics, language=language,
            ))
    ordered = _by_quality(snapshot, sorted(covering)) + _by_quality(snapshot, sorted(hits - covering))
    return [(qid, snapshot[qid].quality_score) for qid in ordered[:limit]]


def text_channel(requirement, snapshot, language, limit, embedding, settings):
    terms = requirement.query_terms() + sorted(m.value for m in requirement.target_metrics)
    if not terms:
        return []
    hits = snapshot.search_text(" ".join(terms), lang=language, limit=limit)
    top = max((s for _, s in hits), default=0.0)
    if top <= 0.0:
        return []
    # query-relative normalization: the best hit of this query scores 1.0
    return [(qid, s / top) for qid, s in hits if s > 0.0]


def semantic_channel(requirement, snapshot, language, limit, embedding, settings):
    if embedding is None:
        return []
    hits = snapshot.search_vector(embedding, limit, language=language)
    return [(qid, min(1.0, s)) for qid, s in hits if s > 0.0]


DEFAULT_CHANNELS: Dict[Channel, ChannelFn] = {
    Channel.EXACT: exact_channel,
    Channel.FILTER: filter_channel,
    Channel.TEXT: text_channel,
    Channel.SEMANTIC: semantic_channel,
}


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------

@dataclass
class RetrievalResult:
    """Per-channel candidate lists for one language plus what went wrong."""

    language: str
    candidates: Dict[Channel, List[Candidate]] = field(default_factory=dict)
    timed_out: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)

    def total(self) -> int:
        return sum(len(v) for v in self.candidates.values())

    def unique_ids(self) -> List[str]:
        return sorted({c.question_id for v in self.candidates.values() for c in v})

    def semantic_scores(self) -> Dict[str, float]:
        return {c.question_id: c.raw_score for c in self.candidates.get(Channel.SEMANTIC, [])}

    @property
    def degraded(self) -> bool:
        return bool(self.timed_out or self.failed)


class CandidateRetriever:
    """Runs the four channels for a requirement and joins them before fusion."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        channels: Optional[Mapping[Channel, ChannelFn]] = None,
        semantic_executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.settings = settings or EngineSettings.from_env()
        self._executor = executor
        self._semantic_executor = semantic_executor
        self._stragglers: Counter = Counter()
        self._stragglers_lock = threading.Lock()
        self.channels: Dict[Channel, ChannelFn] = dict(DEFAULT_CHANNELS)
        if channels:
            self.channels.update(channels)

    @property
    def executor(self) -> ThreadPoolExecutor:
        return self._executor or _get_query_executor(self.settings.retrieval_workers)

    def executor_for(self, channel: Channel) -> ThreadPoolExecutor:
        if channel is Channel.SEMANTIC:
            return self._semantic_executor or _get_semantic_executor(self.settings.semantic_workers)
        return self.executor

    def stragglers(self, channel: Channel) -> int:
        with self._stragglers_lock:
            return self._stragglers[channel]

    def retrieve(
        self,
        requirement: SurveyRequirement,
        snapshot: CatalogSnapshot,
        language: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> RetrievalResult:
        """Fan out all channels against ``language`` (default: the requirement's)."""
        lang = language or requirement.language
        limit = self.settings.headroom_limit(requirement.requested_count)
        result = RetrievalResult(language=lang)

        started = time.monotonic()
        futures: Dict[Channel, Future] = {}
        skipped: List[Channel] = []
        for channel, fn in self.channels.items():
            if self.stragglers(channel) >= self.settings.channel_max_stragglers:
                skipped.append(channel)
                continue
            futures[channel] = self.executor_for(channel).submit(
                self._timed, fn, requirement, snapshot, lang, limit, embedding
            )

        for channel in self.channels:
            if channel in skipped:
                logger.warning(
                    f"Retrieval degraded ({lang}): channel '{channel.value}' skipped, "
                    f"{self.stragglers(channel)} timed-out calls still running"
                )
                result.timed_out.append(channel.value)
                result.candidates[channel] = []
                continue
            fut = futures[channel]
            timeout = self.settings.timeout_for(channel.value)
            remaining = max(0.0, started + timeout - time.monotonic())
            try:
                try:
                    pairs, elapsed = fut.result(timeout=remaining)
                except FutureTimeout:
                    self._abandon(channel, fut)
                    raise ChannelTimeoutError(channel.value, timeout) from None
            except ChannelTimeoutError as e:
                logger.warning(f"Retrieval degraded ({lang}): {e}")
                result.timed_out.append(channel.value)
                result.candidates[channel] = []
                continue
            except Exception as e:
                logger.error(f"Channel '{channel.value}' failed ({lang}): {e}")
                result.failed[channel.value] = str(e)
                result.candidates[channel] = []
                continue
            result.durations[channel.value] = elapsed
            result.candidates[channel] = self._to_candidates(channel, pairs, snapshot, limit)

        logger.debug(
            f"Retrieved {result.total()} candidates ({lang}) "
            + ", ".join(f"{c.value}={len(v)}" for c, v in result.candidates.items())
        )
        return result

    def _abandon(self, channel: Channel, fut: Future) -> None:
        """Give up on a timed-out call; a running one stays counted until it ends."""
        if fut.cancel():
            return
        with self._stragglers_lock:
            self._stragglers[channel] += 1
        fut.add_done_callback(lambda _f, c=channel: self._release(c))

    def _release(self, channel: Channel) -> None:
        with self._stragglers_lock:
            self._stragglers[channel] -= 1

    def _timed(self, fn: ChannelFn, requirement, snapshot, lang, limit, embedding) -> Tuple[List[Tuple[str, float]], float]:
        t0 = time.perf_counter()
        pairs = fn(requirement, snapshot, lang, limit, embedding, self.settings)
        return list(pairs or []), time.perf_counter() - t0

    @staticmethod
    def _to_candidates(
        channel: Channel,
        pairs: Sequence[Tuple[str, float]],
        snapshot: CatalogSnapshot,
        limit: int,
    ) -> List[Candidate]:
        seen: Dict[str, float] = {}
        for qid, score in pairs:
            if qid not in snapshot:
                continue
            s = max(0.0, min(1.0, float(score)))
            # keep the best score when a channel reports an id twice
            if qid not in seen or s > seen[qid]:
                seen[qid] = s
        ordered = sorted(seen.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        return [Candidate(qid, channel, s) for qid, s in ordered]
