#!/usr/bin/env python3
"""
Request deduplication for the survey composer.

- RequestFingerprint: stable hash of the semantically relevant fields of a
  SurveyRequirement (order-insensitive sets, case-folded strings)
- SingleFlight: at most one in-flight computation per key; concurrent callers
  with the same key wait for the leader and share its result or exception
"""

import hashlib
import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from survey_composer.logger import get_logger
from survey_composer.models import SurveyRequirement

logger = get_logger("survey_dedup")


class RequestFingerprint:
    """Fingerprint of a requirement, used as cache and single-flight key."""

    def __init__(self, requirement: SurveyRequirement):
        self.requirement = requirement
        self.fingerprint = self._generate_fingerprint(requirement)
        self.created_at = time.time()

    @staticmethod
    def normalize(requirement: SurveyRequirement) -> Dict[str, Any]:
        normalized: Dict[str, Any] = {
            "language": (requirement.language or "").strip().lower(),
            "industry": (requirement.industry or "").strip().lower(),
            "requested_count": int(requirement.requested_count),
            "target_metrics": sorted(m.value for m in requirement.target_metrics),
            "keyword_expansions": sorted({k.strip().lower() for k in requirement.keyword_expansions if k.strip()}),
            "category_constraints": (
                sorted("/".join(p) for p in requirement.category_constraints)
                if requirement.category_constraints else None
            ),
        }
        if requirement.embedding is not None:
            # rounded so float noise from the normalizer does not split keys
            normalized["embedding"] = [round(float(x), 6) for x in requirement.embedding]
        return normalized

    def _generate_fingerprint(self, requirement: SurveyRequirement) -> str:
        payload = json.dumps(self.normalize(requirement), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        return self.fingerprint


def fingerprint_requirement(requirement: SurveyRequirement) -> str:
    return RequestFingerprint(requirement).fingerprint


class _Call:
    __slots__ = ("done", "result", "error", "followers")

    def __init__(self):
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.followers = 0


class SingleFlight:
    """
    Collapse concurrent calls with the same key into one execution.

    The first caller for a key becomes the leader and runs ``fn``; callers
    arriving while it runs register as followers and block until it finishes.
    Once the leader is done the key is released, so later calls run again
    (caching completed results is the draft cache's job, not this one).
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._calls: Dict[str, _Call] = {}
        self._lock = threading.Lock()
        self._stats = {
            "executions": 0,
            "shared": 0,
        }

    def do(self, key: str, fn: Callable[[], Any], timeout: Optional[float] = None) -> Tuple[Any, bool]:
        """Run ``fn`` once per concurrent ``key``.

        Returns ``(result, shared)`` where ``shared`` is True for followers.
        A leader's exception is re-raised in every follower.
        """
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.followers += 1
                self._stats["shared"] += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                self._stats["executions"] += 1
                leader = True

        if not leader:
            logger.debug(f"[{self.name}] joining in-flight call {key[:12]}")
            if not call.done.wait(timeout):
                raise TimeoutError(f"in-flight call {key[:12]} did not finish within {timeout}s")
            if call.error is not None:
                raise call.error
            return call.result, True

        try:
            call.result = fn()
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
            if call.followers:
                logger.debug(f"[{self.name}] call {key[:12]} shared with {call.followers} followers")
        return call.result, False

    def in_flight(self) -> int:
        with self._lock:
            return len(self._calls)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            stats["in_flight"] = len(self._calls)
            return stats
