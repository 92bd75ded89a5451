"""
core/cache.py

Memoizes (operation, parameters) -> result pairs for the query layer.

Entries expire a fixed time after insertion (no sliding expiry). The cache
is bounded by entry count and by an estimated byte size, taken as the length
of the result's JSON form. When a write would break either bound, expired
entries are purged first, then the oldest-inserted entries are evicted until
the new entry fits.

Callers canonicalize parameters (for instance sort dimension lists) before
calling; the key serialization only guarantees stable mapping-key order.

Not thread-safe. One writer per instance.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, is_dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, TypeVar

import numpy as np
import pandas as pd

from core.config import CacheSettings, get_cache_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _json_default(value: object) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, (tuple, list)):
        return list(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        out = float(value)
        return None if math.isnan(out) or math.isinf(out) else out
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    if isinstance(value, pd.DataFrame):
        return value.to_dict(orient="records")
    return str(value)


def serialize(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def make_key(operation: str, params: object) -> str:
    return f"{operation}:{serialize(params)}"


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    created_at: float
    size: int


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    total_size: int
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total * 100 if total else 0.0


class QueryCache:
    """
    TTL + size-bounded memo table.

    Parameters
    ----------
    ttl_seconds:
        Lifetime of an entry, measured from insertion.
    max_entries:
        Upper bound on the number of live entries.
    max_bytes:
        Upper bound on the summed size estimate of live entries.
    clock:
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        max_bytes: Optional[int] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "query",
    ) -> None:
        defaults: CacheSettings = get_cache_settings()
        self.ttl_seconds = float(defaults.ttl_seconds if ttl_seconds is None else ttl_seconds)
        self.max_entries = int(defaults.max_entries if max_entries is None else max_entries)
        self.max_bytes = int(defaults.max_bytes if max_bytes is None else max_bytes)
        if self.max_entries < 1 or self.max_bytes < 1:
            raise ValueError("max_entries and max_bytes must be positive")
        self.name = name
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._total_size = 0
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total_size -= entry.size

    def get(self, operation: str, params: object) -> Optional[Any]:
        key = make_key(operation, params)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if self._expired(entry, self._clock()):
            self._remove(key)
            self._misses += 1
            logger.debug("cache[%s] expired %s", self.name, operation)
            return None
        self._hits += 1
        logger.debug("cache[%s] hit %s", self.name, operation)
        return entry.value

    def set(self, operation: str, params: object, value: Any) -> None:
        key = make_key(operation, params)
        size = len(serialize(value))
        if key in self._entries:
            self._remove(key)
        if size > self.max_bytes:
            logger.debug("cache[%s] skip %s: %d bytes exceeds bound", self.name, operation, size)
            return
        self._make_space(size)
        self._entries[key] = CacheEntry(value=value, created_at=self._clock(), size=size)
        self._total_size += size

    def get_or_compute(self, operation: str, params: object, compute: Callable[[], T]) -> T:
        cached = self.get(operation, params)
        if cached is not None:
            return cached
        value = compute()
        self.set(operation, params, value)
        return value

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            self._remove(key)
        return len(expired)

    def _over_bounds(self, incoming: int) -> bool:
        return len(self._entries) >= self.max_entries or self._total_size + incoming > self.max_bytes

    def _make_space(self, incoming: int) -> None:
        if not self._over_bounds(incoming):
            return
        purged = self.purge_expired()
        evicted = 0
        while self._entries and self._over_bounds(incoming):
            oldest = next(iter(self._entries))
            self._remove(oldest)
            evicted += 1
        if purged or evicted:
            logger.debug("cache[%s] purged=%d evicted=%d", self.name, purged, evicted)

    def clear(self) -> None:
        self._entries.clear()
        self._total_size = 0

    def stats(self) -> CacheStats:
        return CacheStats(
            entry_count=len(self._entries),
            total_size=self._total_size,
            hits=self._hits,
            misses=self._misses,
        )

    def to_dict(self) -> Dict[str, Any]:
        s = self.stats()
        return {
            "name": self.name,
            "entry_count": s.entry_count,
            "total_size": s.total_size,
            "hits": s.hits,
            "misses": s.misses,
            "hit_rate": s.hit_rate,
            "ttl_seconds": self.ttl_seconds,
            "max_entries": self.max_entries,
            "max_bytes": self.max_bytes,
        }
