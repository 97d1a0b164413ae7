from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

from rollout_core.clock import CancellationToken
from rollout_core.config import RolloutConfig
from rollout_core.errors import MetricsUnavailable
from rollout_core.integrations import InMemoryTrafficRouter
from rollout_core.types import MetricSample, RolloutStage


START = datetime(2026, 1, 1, tzinfo=timezone.utc)

HEALTHY = (0.01, 1000.0, 1000.0)
UNHEALTHY = (0.10, 1000.0, 1000.0)


class ManualClock:
    """Clock that only moves when something sleeps on it."""

    def __init__(self) -> None:
        self.t = 0.0
        self.sleeps: list[float] = []
        self.on_sleep = None

    def now(self) -> float:
        return self.t

    def utcnow(self) -> datetime:
        return START + timedelta(seconds=self.t)

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        self.sleeps.append(seconds)
        self.t += max(0.0, seconds)
        if self.on_sleep is not None:
            self.on_sleep(self)
        return bool(cancel is not None and cancel.is_cancelled())


class ScriptedMetrics:
    """Returns scripted readings in order and repeats the last one once exhausted.

    ``None`` entries in the script raise ``MetricsUnavailable``.
    """

    def __init__(self, script: list[tuple[float, float, float] | None]) -> None:
        self.script = list(script)
        self.calls = 0
        self._lock = threading.Lock()

    def sample(self, service_id: str) -> MetricSample:
        with self._lock:
            idx = min(self.calls, len(self.script) - 1)
            self.calls += 1
        row = self.script[idx]
        if row is None:
            raise MetricsUnavailable(f"no reading for {service_id}")
        error_rate, response_time_ms, throughput = row
        return MetricSample(
            error_rate=error_rate,
            response_time_ms=response_time_ms,
            throughput=throughput,
            timestamp=START + timedelta(seconds=idx),
        )


class SlowRouter(InMemoryTrafficRouter):
    """In-memory router that takes ``delays[percent]`` seconds before applying a split."""

    def __init__(self, delays: dict[int, float]) -> None:
        super().__init__()
        self.delays = delays

    def set_traffic_percentage(self, service_id: str, percent: int) -> None:
        time.sleep(self.delays.get(int(percent), 0.0))
        super().set_traffic_percentage(service_id, percent)


class BlockingMetrics:
    """Healthy readings, but every call waits until ``release`` is set."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.calls = 0

    def sample(self, service_id: str) -> MetricSample:
        self.calls += 1
        self.release.wait(5)
        return MetricSample(*HEALTHY)


def fast_config(**overrides: object) -> RolloutConfig:
    values: dict[str, object] = {
        "failure_threshold": 3,
        "check_interval_sec": 30,
        "warmup_period_sec": 0,
        "metrics_retries": 1,
        "metrics_backoff_sec": 0,
        "rollback_verification_sec": 0,
    }
    values.update(overrides)
    return RolloutConfig.model_validate(values)


def plan(dwell_sec: float = 120) -> list[RolloutStage]:
    return [
        RolloutStage("canary-1", 5, dwell_sec),
        RolloutStage("canary-2", 10, dwell_sec),
        RolloutStage("canary-3", 25, dwell_sec),
        RolloutStage("canary-4", 50, dwell_sec),
        RolloutStage("full", 100, 0),
    ]
