"""Simple in-process metrics for parley.

This module provides:
- Operation timing (component operations and store calls)
- Store retry counters
- Fan-out delivered/dropped counters per event type
- Request timing for the HTTP layer

Metrics are lightweight and exported as a dict at ``GET /metrics``. One
``Metrics`` instance is owned by each ``Parley`` facade.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        """Record a timing measurement."""
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class FanoutStats:
    """Delivery counters for one event type."""

    delivered: int = 0
    dropped: int = 0

    def to_dict(self) -> dict:
        return {"delivered": self.delivered, "dropped": self.dropped}


@dataclass
class Metrics:
    """Metrics collector, safe to update from the store executor thread."""

    _lock: Lock = field(default_factory=Lock)
    operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    store_retries: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    fanout: dict[str, FanoutStats] = field(default_factory=lambda: defaultdict(FanoutStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    _start_time: float = field(default_factory=time.time)

    def record_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.operations[operation].record(duration_ms)

    def record_store_retry(self, operation: str) -> None:
        with self._lock:
            self.store_retries[operation] += 1

    def record_delivery(self, event_type: str) -> None:
        with self._lock:
            self.fanout[event_type].delivered += 1

    def record_drop(self, event_type: str) -> None:
        with self._lock:
            self.fanout[event_type].dropped += 1

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "operations": {k: v.to_dict() for k, v in self.operations.items()},
                "store_retries": dict(self.store_retries),
                "fanout": {k: v.to_dict() for k, v in self.fanout.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.operations.clear()
            self.store_retries.clear()
            self.fanout.clear()
            self.request_stats.clear()
            self._start_time = time.time()

    @contextmanager
    def timed(self, operation: str) -> Iterator[None]:
        """Time a block and record it under ``operation``.

        Usage:
            with metrics.timed("send_message"):
                ...
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.record_operation(operation, duration_ms)
            if duration_ms > SLOW_OPERATION_MS:
                logger.warning(f"Slow operation: {operation} took {duration_ms:.1f}ms")
