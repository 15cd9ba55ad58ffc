"""In-process metrics for chatcore.

Collected per process and served by the API's /metrics endpoint:
- timings of component operations (send, edit, mark-read, listings)
- timings of HTTP requests, grouped by route template
- unread cache hits and misses
- event counters (messages sent, conversations created, errors by kind)
"""

from __future__ import annotations

import logging
import time
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Operations slower than this are logged as warnings
SLOW_OPERATION_MS = 100.0


@dataclass
class TimingStats:
    """Running totals for one timed operation or route."""

    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    last_ms: float = 0.0

    def record(self, duration_ms: float, failed: bool = False) -> None:
        self.count += 1
        self.errors += int(failed)
        self.total_ms += duration_ms
        self.last_ms = duration_ms
        if duration_ms < self.min_ms:
            self.min_ms = duration_ms
        if duration_ms > self.max_ms:
            self.max_ms = duration_ms

    @property
    def avg_ms(self) -> float:
        if not self.count:
            return 0.0
        return self.total_ms / self.count

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "errors": self.errors,
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count else 0,
            "max_ms": round(self.max_ms, 2),
            "last_ms": round(self.last_ms, 2),
        }


@dataclass
class Metrics:
    """Thread-safe metrics collector.

    Use the module-level `metrics` instance; tests call `reset()`.
    """

    operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    requests: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    cache_hits: Counter = field(default_factory=Counter)
    cache_misses: Counter = field(default_factory=Counter)
    counters: Counter = field(default_factory=Counter)
    _lock: Lock = field(default_factory=Lock)
    _started: float = field(default_factory=time.time)

    def record_operation(self, operation: str, duration_ms: float, failed: bool = False) -> None:
        with self._lock:
            self.operations[operation].record(duration_ms, failed)

    def record_request(self, endpoint: str, duration_ms: float, failed: bool = False) -> None:
        with self._lock:
            self.requests[endpoint].record(duration_ms, failed)

    def record_cache_hit(self, cache_name: str) -> None:
        with self._lock:
            self.cache_hits[cache_name] += 1

    def record_cache_miss(self, cache_name: str) -> None:
        with self._lock:
            self.cache_misses[cache_name] += 1

    def increment(self, name: str, amount: int = 1) -> None:
        """Bump an event counter such as "messages_sent" or "errors.conflict"."""
        with self._lock:
            self.counters[name] += amount

    def _cache_dict(self) -> dict:
        result = {}
        for name in sorted(set(self.cache_hits) | set(self.cache_misses)):
            hits, misses = self.cache_hits[name], self.cache_misses[name]
            lookups = hits + misses
            result[name] = {
                "hits": hits,
                "misses": misses,
                "hit_rate_pct": round(hits / lookups * 100, 2) if lookups else 0.0,
            }
        return result

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started, 1),
                "operations": {k: v.to_dict() for k, v in self.operations.items()},
                "requests": {k: v.to_dict() for k, v in self.requests.items()},
                "cache": self._cache_dict(),
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        with self._lock:
            self.operations.clear()
            self.requests.clear()
            self.cache_hits.clear()
            self.cache_misses.clear()
            self.counters.clear()
            self._started = time.time()


# Global metrics instance
metrics = Metrics()


@contextmanager
def timed_block(operation: str):
    """Time the enclosed block and record it under `operation`.

    Usage:
        with timed_block("count_unread"):
            count = backend.count_unread(...)
    """
    start = time.perf_counter()
    failed = True
    try:
        yield
        failed = False
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_operation(operation, duration_ms, failed)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow operation: {operation} took {duration_ms:.1f}ms")


def timed_operation(operation: str) -> Callable[[F], F]:
    """Decorator form of `timed_block`.

    Usage:
        @timed_operation("send_message")
        def send_message(self, ...) -> Message:
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with timed_block(operation):
                return func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator
