from __future__ import annotations

from typing import Protocol, runtime_checkable

from rollout_core.types import MetricSample


@runtime_checkable
class TrafficRouter(Protocol):
    def set_traffic_percentage(self, service_id: str, percent: int) -> None:
        """Route ``percent`` of traffic to the new version. Must be idempotent.

        Raises ``TrafficShiftFailed`` when the router rejects the change.
        """


@runtime_checkable
class MetricsSource(Protocol):
    def sample(self, service_id: str) -> MetricSample:
        """Return a point-in-time reading; raises ``MetricsUnavailable``."""
