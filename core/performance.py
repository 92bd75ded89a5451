"""
core/performance.py

Rolling timing samples for façade operations.

Each sample records how long one operation took and whether it was served
from cache. The monitor keeps the most recent ``max_samples`` and reports
averages, the cache-hit share and how many samples crossed the slow-query
threshold. A slow sample is logged at warning level when it is recorded.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from core.config import get_query_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryTiming:
    operation: str
    duration_ms: float
    cache_hit: bool
    slow: bool


class Measurement:
    """Handle yielded by :meth:`PerformanceMonitor.measure`; set ``cache_hit`` before the block exits."""

    __slots__ = ("cache_hit",)

    def __init__(self) -> None:
        self.cache_hit = False


class PerformanceMonitor:
    def __init__(
        self,
        max_samples: int = 100,
        slow_query_ms: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be positive")
        self.slow_query_ms = float(get_query_settings().slow_query_ms if slow_query_ms is None else slow_query_ms)
        self._clock = clock
        self._samples: Deque[QueryTiming] = deque(maxlen=max_samples)

    def __len__(self) -> int:
        return len(self._samples)

    def record(self, operation: str, duration_ms: float, *, cache_hit: bool = False) -> QueryTiming:
        sample = QueryTiming(
            operation=operation,
            duration_ms=duration_ms,
            cache_hit=cache_hit,
            slow=duration_ms >= self.slow_query_ms,
        )
        self._samples.append(sample)
        if sample.slow:
            logger.warning("slow %s: %.1f ms (threshold %.0f ms)", operation, duration_ms, self.slow_query_ms)
        return sample

    @contextmanager
    def measure(self, operation: str) -> Iterator[Measurement]:
        handle = Measurement()
        started = self._clock()
        try:
            yield handle
        finally:
            self.record(operation, (self._clock() - started) * 1000, cache_hit=handle.cache_hit)

    def samples(self) -> List[QueryTiming]:
        return list(self._samples)

    def stats(self) -> Dict[str, Any]:
        samples = list(self._samples)
        total = len(samples)
        if not total:
            return {
                "total_queries": 0,
                "avg_query_ms": 0.0,
                "max_query_ms": 0.0,
                "cache_hit_rate": 0.0,
                "slow_queries": 0,
                "slow_query_ms": self.slow_query_ms,
                "by_operation": {},
            }
        by_operation: Dict[str, Dict[str, float]] = {}
        for s in samples:
            entry = by_operation.setdefault(s.operation, {"count": 0, "total_ms": 0.0})
            entry["count"] += 1
            entry["total_ms"] += s.duration_ms
        return {
            "total_queries": total,
            "avg_query_ms": sum(s.duration_ms for s in samples) / total,
            "max_query_ms": max(s.duration_ms for s in samples),
            "cache_hit_rate": sum(1 for s in samples if s.cache_hit) / total * 100,
            "slow_queries": sum(1 for s in samples if s.slow),
            "slow_query_ms": self.slow_query_ms,
            "by_operation": {
                op: {"count": int(v["count"]), "avg_ms": v["total_ms"] / v["count"]} for op, v in by_operation.items()
            },
        }

    def check(self) -> Dict[str, bool]:
        """Whether the rolling average stays under the slow-query threshold."""
        query_time_ok = self.stats()["avg_query_ms"] < self.slow_query_ms
        return {"query_time_ok": query_time_ok, "overall_ok": query_time_ok}

    def clear(self) -> None:
        self._samples.clear()
