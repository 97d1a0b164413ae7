from __future__ import annotations

import threading
from datetime import datetime, timezone

import numpy as np

from rollout_core.errors import TrafficShiftFailed
from rollout_core.types import MetricSample


class InMemoryTrafficRouter:
    """Router that only remembers the requested split per service."""

    def __init__(self, *, reject: set[int] | None = None) -> None:
        self.routes: dict[str, int] = {}
        self.calls: list[tuple[str, int]] = []
        self.reject = set(reject or ())
        self._lock = threading.Lock()

    def set_traffic_percentage(self, service_id: str, percent: int) -> None:
        with self._lock:
            self.calls.append((service_id, int(percent)))
            if int(percent) in self.reject:
                raise TrafficShiftFailed(f"Router rejected {percent}% for {service_id}")
            self.routes[service_id] = int(percent)

    def percentage(self, service_id: str) -> int:
        with self._lock:
            return self.routes.get(service_id, 0)


class SimulatedMetricsSource:
    """Seeded synthetic readings around configurable means.

    After ``degrade_after`` samples the error rate jumps to
    ``degraded_error_rate``, which lets demos exercise the rollback path.
    """

    def __init__(
        self,
        *,
        error_rate: float = 0.01,
        response_time_ms: float = 1250.0,
        throughput: float = 900.0,
        jitter: float = 0.1,
        seed: int | None = None,
        degrade_after: int | None = None,
        degraded_error_rate: float = 0.12,
    ) -> None:
        self.error_rate = error_rate
        self.response_time_ms = response_time_ms
        self.throughput = throughput
        self.jitter = jitter
        self.degrade_after = degrade_after
        self.degraded_error_rate = degraded_error_rate
        self.rng = np.random.default_rng(seed)
        self.count = 0
        self._lock = threading.Lock()

    def _around(self, mean: float) -> float:
        if mean <= 0 or self.jitter <= 0:
            return max(0.0, mean)
        return float(max(0.0, self.rng.uniform(mean * (1.0 - self.jitter), mean * (1.0 + self.jitter))))

    def sample(self, service_id: str) -> MetricSample:
        with self._lock:
            self.count += 1
            degraded = self.degrade_after is not None and self.count > self.degrade_after
            error_mean = self.degraded_error_rate if degraded else self.error_rate
            return MetricSample(
                error_rate=min(1.0, self._around(error_mean)),
                response_time_ms=round(self._around(self.response_time_ms), 1),
                throughput=round(self._around(self.throughput), 1),
                timestamp=datetime.now(timezone.utc),
            )
