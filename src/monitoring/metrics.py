"""In-process job metrics for the ingestion worker.

Counters (jobs completed/failed/skipped, events created), gauges (queue mode)
and timers (job duration). Snapshotted by ``to_dict()`` into the status
payload; nothing is exported over the network.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any


def _key(name: str, labels: dict[str, str] | None) -> str:
    """Flatten a metric name and its labels into ``name|k=v|k=v`` (labels sorted)."""
    if not labels:
        return name
    return "|".join([name, *(f"{k}={v}" for k, v in sorted(labels.items()))])


@dataclass
class TimerStats:
    """Running aggregate of a timer's observations."""

    total: float = 0.0
    count: int = 0
    max: float = 0.0
    min: float = 0.0

    def add(self, seconds: float) -> None:
        if self.count == 0:
            self.max = self.min = seconds
        else:
            self.max = max(self.max, seconds)
            self.min = min(self.min, seconds)
        self.total += seconds
        self.count += 1

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "sum": self.total,
            "count": float(self.count),
            "avg": self.avg,
            "max": self.max,
            "min": self.min,
        }


@dataclass
class MetricsRegistry:
    """Thread-safe counters, gauges and timers keyed by name and labels."""

    counters: dict[str, float] = field(default_factory=dict)
    gauges: dict[str, float] = field(default_factory=dict)
    timers: dict[str, TimerStats] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self, name: str, value: float = 1.0, *, labels: dict[str, str] | None = None) -> None:
        k = _key(name, labels)
        with self._lock:
            self.counters[k] = self.counters.get(k, 0.0) + float(value)

    def set_gauge(self, name: str, value: float, *, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self.gauges[_key(name, labels)] = float(value)

    def observe(self, name: str, seconds: float, *, labels: dict[str, str] | None = None) -> None:
        """Add one timer observation."""
        k = _key(name, labels)
        with self._lock:
            self.timers.setdefault(k, TimerStats()).add(float(seconds))

    @contextmanager
    def time(self, name: str, *, labels: dict[str, str] | None = None) -> Iterator[None]:
        """Observe the wall time of the block, also when it raises."""
        started = time.monotonic()
        try:
            yield
        finally:
            self.observe(name, time.monotonic() - started, labels=labels)

    def get_counter(self, name: str, *, labels: dict[str, str] | None = None) -> float:
        return self.counters.get(_key(name, labels), 0.0)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly copy of every metric."""
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "timers": {k: t.to_dict() for k, t in self.timers.items()},
            }
