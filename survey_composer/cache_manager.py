#!/usr/bin/env python3
"""
Unified caching for the survey composer.

Provides a thread-safe in-memory cache with configurable eviction policies and
statistics, a small registry of named caches, and ``DraftCache``: the
fingerprint-keyed draft store whose entries go stale when the catalog version
they were built from is no longer active.
"""

import os
import time
import hashlib
import json
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from collections import OrderedDict
from enum import Enum
import logging

from survey_composer.models import SurveyDraft

logger = logging.getLogger("survey_cache")


class EvictionPolicy(Enum):
    """Cache eviction policies."""
    LRU = "lru"  # Least Recently Used
    LFU = "lfu"  # Least Frequently Used
    TTL = "ttl"  # Time To Live
    FIFO = "fifo"  # First In First Out


class CacheSlot:
    """Stored value with expiry and access bookkeeping."""

    __slots__ = ("value", "created_at", "last_accessed", "access_count", "ttl")

    def __init__(self, value: Any, ttl: Optional[float] = None):
        self.value = value
        self.created_at = time.time()
        self.last_accessed = self.created_at
        self.access_count = 1
        self.ttl = ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.ttl is None:
            return False
        return (now or time.time()) - self.created_at > self.ttl

    def access(self) -> Any:
        self.last_accessed = time.time()
        self.access_count += 1
        return self.value


class UnifiedCache:
    """
    In-memory cache with configurable eviction policy.

    Features:
    - LRU, LFU, TTL and FIFO eviction
    - Thread-safe operations
    - Hit/miss/eviction statistics
    - Expired entries are purged lazily on access and by ``purge_expired``
    """

    def __init__(
        self,
        name: str,
        max_size: int = 1000,
        eviction_policy: EvictionPolicy = EvictionPolicy.LRU,
        default_ttl: Optional[float] = None,
    ):
        self.name = name
        self.max_size = max_size
        self.eviction_policy = eviction_policy
        self.default_ttl = default_ttl

        self._slots: Dict[str, CacheSlot] = {}
        self._order: "OrderedDict[str, bool]" = OrderedDict()
        self._lock = threading.RLock()
        self._stats = {
            'hits': 0,
            'misses': 0,
            'evictions': 0,
            'expirations': 0,
            'total_requests': 0,
        }

        logger.debug(f"Initialized cache '{name}' with policy {eviction_policy.value}, max_size={max_size}")

    def _generate_key(self, key: Union[str, Tuple, List, Dict]) -> str:
        """Generate consistent cache key from various input types."""
        if isinstance(key, str):
            return key
        if isinstance(key, (tuple, list)):
            key_str = json.dumps(list(key), sort_keys=True, default=str)
        elif isinstance(key, dict):
            key_str = json.dumps(key, sort_keys=True, default=str)
        else:
            key_str = str(key)
        # Hash long keys to avoid memory issues
        if len(key_str) > 200:
            return hashlib.sha256(key_str.encode()).hexdigest()
        return key_str

    def _drop(self, cache_key: str) -> Optional[CacheSlot]:
        slot = self._slots.pop(cache_key, None)
        self._order.pop(cache_key, None)
        return slot

    def _select_victim(self) -> Optional[str]:
        if not self._slots:
            return None
        if self.eviction_policy == EvictionPolicy.LFU:
            return min(self._slots, key=lambda k: (self._slots[k].access_count, self._slots[k].last_accessed))
        if self.eviction_policy == EvictionPolicy.TTL:
            now = time.time()
            for k, slot in self._slots.items():
                if slot.is_expired(now):
                    return k
        # LRU and FIFO both evict from the front; only LRU reorders on access
        return next(iter(self._order))

    def get(self, key: Union[str, Tuple, List, Dict]) -> Optional[Any]:
        """Get value from cache."""
        cache_key = self._generate_key(key)
        with self._lock:
            self._stats['total_requests'] += 1
            slot = self._slots.get(cache_key)
            if slot is None:
                self._stats['misses'] += 1
                return None
            if slot.is_expired():
                self._drop(cache_key)
                self._stats['misses'] += 1
                self._stats['expirations'] += 1
                return None
            if self.eviction_policy == EvictionPolicy.LRU:
                self._order.move_to_end(cache_key)
            self._stats['hits'] += 1
            return slot.access()

    def set(self, key: Union[str, Tuple, List, Dict], value: Any, ttl: Optional[float] = None) -> bool:
        """Set value in cache, evicting per policy when full."""
        cache_key = self._generate_key(key)
        ttl = ttl if ttl is not None else self.default_ttl
        with self._lock:
            self._drop(cache_key)
            while self.max_size > 0 and len(self._slots) >= self.max_size:
                victim = self._select_victim()
                if victim is None:
                    break
                self._drop(victim)
                self._stats['evictions'] += 1
            self._slots[cache_key] = CacheSlot(value, ttl)
            self._order[cache_key] = True
            return True

    def delete(self, key: Union[str, Tuple, List, Dict]) -> bool:
        cache_key = self._generate_key(key)
        with self._lock:
            return self._drop(cache_key) is not None

    def delete_where(self, predicate: Callable[[str, Any], bool]) -> int:
        """Delete every entry for which predicate(key, value) is true."""
        with self._lock:
            doomed = [k for k, slot in self._slots.items() if predicate(k, slot.value)]
            for k in doomed:
                self._drop(k)
            return len(doomed)

    def purge_expired(self) -> int:
        with self._lock:
            now = time.time()
            expired = [k for k, slot in self._slots.items() if slot.is_expired(now)]
            for k in expired:
                self._drop(k)
            self._stats['expirations'] += len(expired)
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired entries from cache '{self.name}'")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()
            self._order.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats.copy()
            stats['current_size'] = len(self._slots)
            stats['hit_rate'] = stats['hits'] / max(1, stats['total_requests']) * 100
            stats['cache_name'] = self.name
            stats['eviction_policy'] = self.eviction_policy.value
            return stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, key: Union[str, Tuple, List, Dict]) -> bool:
        cache_key = self._generate_key(key)
        with self._lock:
            slot = self._slots.get(cache_key)
            return slot is not None and not slot.is_expired()


@dataclass(frozen=True)
class CacheEntry:
    """A cached draft plus the catalog version it was computed against."""

    fingerprint: str
    draft: SurveyDraft
    catalog_version: str
    created_at: float
    ttl: Optional[float]

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.ttl is None:
            return False
        return (now or time.time()) - self.created_at > self.ttl


class DraftCache:
    """Fingerprint -> CacheEntry store with catalog-version staleness.

    ``current_version`` is a callable returning the active catalog version;
    entries built against any other version are treated as misses and dropped.
    """

    def __init__(
        self,
        current_version: Optional[Callable[[], str]] = None,
        cache: Optional[UnifiedCache] = None,
        default_ttl: Optional[float] = None,
    ):
        self._cache = cache or UnifiedCache("drafts", max_size=1000, eviction_policy=EvictionPolicy.TTL, default_ttl=default_ttl)
        self._current_version = current_version
        self.default_ttl = default_ttl if default_ttl is not None else self._cache.default_ttl

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        entry = self._cache.get(fingerprint)
        if entry is None:
            return None
        if self._current_version is not None:
            active = self._current_version()
            if entry.catalog_version != active:
                self._cache.delete(fingerprint)
                logger.debug(f"Dropped stale draft {fingerprint[:8]} ({entry.catalog_version} != {active})")
                return None
        return entry

    def set(self, fingerprint: str, draft: SurveyDraft, ttl: Optional[float] = None) -> CacheEntry:
        ttl = ttl if ttl is not None else self.default_ttl
        entry = CacheEntry(
            fingerprint=fingerprint,
            draft=draft,
            catalog_version=draft.catalog_version,
            created_at=time.time(),
            ttl=ttl,
        )
        self._cache.set(fingerprint, entry, ttl=ttl)
        return entry

    def invalidate_by_catalog_version(self, version: str) -> int:
        """Drop every draft computed against ``version``."""
        removed = self._cache.delete_where(lambda _k, e: e.catalog_version == version)
        if removed:
            logger.info(f"Invalidated {removed} cached drafts for catalog version {version}")
        return removed

    def clear(self) -> None:
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        return self._cache.get_stats()

    def __len__(self) -> int:
        return len(self._cache)


# Global cache registry
_cache_registry: Dict[str, UnifiedCache] = {}
_registry_lock = threading.Lock()


def get_cache(
    name: str,
    max_size: Optional[int] = None,
    eviction_policy: Optional[EvictionPolicy] = None,
    default_ttl: Optional[float] = None,
) -> UnifiedCache:
    """Get or create a named cache; unset options come from CACHE_<NAME>_* env vars."""
    with _registry_lock:
        if name not in _cache_registry:
            env_prefix = f"CACHE_{name.upper()}_"
            max_size = max_size or int(os.environ.get(f"{env_prefix}MAX_SIZE", "1000"))
            policy_str = os.environ.get(f"{env_prefix}EVICT_POLICY", "lru").lower()
            eviction_policy = eviction_policy or EvictionPolicy(policy_str)
            if default_ttl is None and os.environ.get(f"{env_prefix}DEFAULT_TTL"):
                default_ttl = float(os.environ[f"{env_prefix}DEFAULT_TTL"])
            _cache_registry[name] = UnifiedCache(
                name=name,
                max_size=max_size,
                eviction_policy=eviction_policy,
                default_ttl=default_ttl,
            )
        return _cache_registry[name]


def clear_all_caches() -> None:
    with _registry_lock:
        for cache in _cache_registry.values():
            cache.clear()


def get_all_cache_stats() -> Dict[str, Dict[str, Any]]:
    with _registry_lock:
        return {name: cache.get_stats() for name, cache in _cache_registry.items()}


def get_embedding_cache() -> UnifiedCache:
    """Cache for query embeddings."""
    return get_cache(
        "embeddings",
        max_size=int(os.environ.get("EMBED_CACHE_MAX_SIZE", "8192")),
        eviction_policy=EvictionPolicy.LRU,
        default_ttl=None,  # Embeddings don't expire
    )


def get_draft_store() -> UnifiedCache:
    """Backing store for composed drafts."""
    return get_cache(
        "drafts",
        max_size=int(os.environ.get("DRAFT_CACHE_MAX_SIZE", "1000")),
        eviction_policy=EvictionPolicy.TTL,
        default_ttl=float(os.environ.get("SURVEY_DRAFT_CACHE_TTL", "600")),
    )
