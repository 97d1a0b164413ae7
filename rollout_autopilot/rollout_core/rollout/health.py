from __future__ import annotations

from dataclasses import dataclass

from rollout_core.config import RolloutConfig
from rollout_core.types import HealthVerdict, MetricSample


@dataclass(frozen=True, slots=True)
class HealthThresholds:
    absolute_error_threshold: float = 0.05
    absolute_latency_threshold_ms: float = 5000.0
    relative_throughput_floor: float = 0.8
    error_rate_multiplier: float = 2.0
    response_time_multiplier: float = 1.5

    @classmethod
    def from_config(cls, config: RolloutConfig) -> "HealthThresholds":
        return cls(
            absolute_error_threshold=config.absolute_error_threshold,
            absolute_latency_threshold_ms=config.absolute_latency_threshold_ms,
            relative_throughput_floor=config.relative_throughput_floor,
            error_rate_multiplier=config.regression_multiplier.error_rate,
            response_time_multiplier=config.regression_multiplier.response_time,
        )


class HealthEvaluator:
    """Classifies one sample against the baseline and absolute ceilings.

    Relative rules for a metric are skipped when the baseline is missing or
    that baseline metric is zero.
    """

    def __init__(self, thresholds: HealthThresholds | None = None) -> None:
        self.thresholds = thresholds or HealthThresholds()

    def analyze(self, sample: MetricSample, baseline: MetricSample | None) -> HealthVerdict:
        t = self.thresholds
        warnings: list[str] = []
        errors: list[str] = []

        if sample.error_rate > t.absolute_error_threshold:
            errors.append(
                f"Error rate too high: {sample.error_rate * 100:.2f}% > {t.absolute_error_threshold * 100:.2f}%"
            )
        elif baseline is not None and baseline.error_rate > 0 and sample.error_rate > baseline.error_rate * t.error_rate_multiplier:
            warnings.append(
                f"Error rate increased: {sample.error_rate * 100:.2f}% vs baseline {baseline.error_rate * 100:.2f}%"
            )

        if sample.response_time_ms > t.absolute_latency_threshold_ms:
            errors.append(
                f"Response time too high: {sample.response_time_ms:.0f}ms > {t.absolute_latency_threshold_ms:.0f}ms"
            )
        elif (
            baseline is not None
            and baseline.response_time_ms > 0
            and sample.response_time_ms > baseline.response_time_ms * t.response_time_multiplier
        ):
            warnings.append(
                f"Response time increased: {sample.response_time_ms:.0f}ms vs baseline {baseline.response_time_ms:.0f}ms"
            )

        # Throughput has no warning tier.
        if baseline is not None and baseline.throughput > 0:
            floor = baseline.throughput * t.relative_throughput_floor
            if sample.throughput < floor:
                errors.append(
                    f"Throughput too low: {sample.throughput:.1f} vs baseline {baseline.throughput:.1f} (floor {floor:.1f})"
                )

        return HealthVerdict(healthy=not errors, warnings=tuple(warnings), errors=tuple(errors))
