from __future__ import annotations

import numpy as np

from rollout_core.clock import CancellationToken, Clock, SystemClock
from rollout_core.config import RolloutConfig
from rollout_core.errors import MetricsUnavailable
from rollout_core.events import EventLog
from rollout_core.integrations.base import MetricsSource
from rollout_core.types import BASELINE_SOURCE, MetricSample

from .calls import call_with_timeout, retry_call


def read_metrics(metrics: MetricsSource, service_id: str, *, timeout_sec: float) -> MetricSample:
    try:
        return call_with_timeout(metrics.sample, timeout_sec, service_id, name="metrics-sample")
    except MetricsUnavailable:
        raise
    except TimeoutError as exc:
        raise MetricsUnavailable(f"Metrics source did not answer within {timeout_sec}s for {service_id}") from exc
    except Exception as exc:
        raise MetricsUnavailable(f"Metrics source failed for {service_id}: {exc!r}") from exc


def aggregate_samples(readings: list[MetricSample]) -> MetricSample:
    if not readings:
        raise ValueError("Cannot aggregate an empty list of readings")
    if len(readings) == 1:
        return readings[0].tagged(BASELINE_SOURCE)
    return MetricSample(
        error_rate=float(np.mean([r.error_rate for r in readings])),
        response_time_ms=float(np.mean([r.response_time_ms for r in readings])),
        throughput=float(np.mean([r.throughput for r in readings])),
        source=BASELINE_SOURCE,
        timestamp=readings[-1].timestamp,
    )


class BaselineCollector:
    """Captures the pre-rollout health snapshot used for relative comparisons."""

    def __init__(
        self,
        metrics: MetricsSource,
        config: RolloutConfig,
        *,
        clock: Clock | None = None,
        events: EventLog | None = None,
    ) -> None:
        self.metrics = metrics
        self.config = config
        self.clock = clock or SystemClock()
        self.events = events or EventLog()

    def _read(self, service_id: str, cancel: CancellationToken | None) -> MetricSample:
        def on_retry(attempt: int, exc: Exception) -> None:
            self.events.emit("baseline_retry", service_id=service_id, attempt=attempt, error=str(exc))

        return retry_call(
            lambda: read_metrics(self.metrics, service_id, timeout_sec=self.config.baseline_timeout_sec),
            attempts=self.config.metrics_retries + 1,
            retry_on=(MetricsUnavailable,),
            clock=self.clock,
            backoff_sec=self.config.metrics_backoff_sec,
            cancel=cancel,
            on_retry=on_retry,
        )

    def collect(self, service_id: str, cancel: CancellationToken | None = None) -> MetricSample:
        readings: list[MetricSample] = []
        for idx in range(self.config.baseline_samples):
            if idx and self.clock.sleep(self.config.baseline_interval_sec, cancel):
                break
            readings.append(self._read(service_id, cancel))
        if not readings:
            raise MetricsUnavailable(f"Baseline collection for {service_id} was cancelled before any reading")
        baseline = aggregate_samples(readings)
        self.events.emit(
            "baseline_collected",
            service_id=service_id,
            readings=len(readings),
            error_rate=baseline.error_rate,
            response_time_ms=baseline.response_time_ms,
            throughput=baseline.throughput,
        )
        return baseline
