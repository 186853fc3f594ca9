#!filepath: bspml/observability/metrics.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict

from bspml.utils.logger import logs


@dataclass
class MetricRecorder:
    """
    Thread-safe metric sink.

    - record(name, value) : last-value gauge
    - increment(name)     : counter
    - observe(name, sec)  : accumulated timing (total + count)
    - snapshot()          : consistent copy taken under the lock
    """

    enabled: bool = True
    verbose: bool = False
    metrics: Dict[str, Any] = field(default_factory=dict)
    counters: Dict[str, int] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def record(self, name: str, value: Any):
        if not self.enabled:
            return
        with self._lock:
            self.metrics[name] = value
        if self.verbose:
            logs.info(f"[Metric] {name} = {value}")

    def increment(self, name: str, by: int = 1):
        if not self.enabled:
            return
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + by

    def observe(self, name: str, seconds: float):
        if not self.enabled:
            return
        with self._lock:
            self.timings[name] = self.timings.get(name, 0.0) + seconds
            self.counters[name] = self.counters.get(name, 0) + 1

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                "metrics": dict(self.metrics),
                "counters": dict(self.counters),
                "timings": dict(self.timings),
            }

    def reset(self):
        with self._lock:
            self.metrics.clear()
            self.counters.clear()
            self.timings.clear()


@dataclass(frozen=True)
class PerformanceMetrics:
    """
    Aggregate communicator accounting.
    """

    total_time: float = 0.0
    communication_time: float = 0.0
    num_calls: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    per_operation_calls: Dict[str, int] = field(default_factory=dict)
    per_operation_time: Dict[str, float] = field(default_factory=dict)

    @property
    def throughput(self) -> float:
        """Bytes moved per second of communication time."""
        if self.communication_time <= 0:
            return 0.0
        return (self.bytes_sent + self.bytes_received) / self.communication_time
