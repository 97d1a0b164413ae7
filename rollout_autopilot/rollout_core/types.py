from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from rollout_core.errors import InvalidRolloutPlan


class RolloutStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {RolloutStatus.COMPLETED, RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED}


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


BASELINE_SOURCE = "baseline"
ROLLBACK_SOURCE = "rollback"


@dataclass(frozen=True, slots=True)
class RolloutStage:
    name: str
    traffic_percent: int
    dwell_sec: float = 0.0

    @property
    def terminal(self) -> bool:
        return self.traffic_percent == 100

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "traffic_percent": self.traffic_percent, "dwell_sec": self.dwell_sec}


def validate_stages(stages: Iterable[RolloutStage]) -> tuple[RolloutStage, ...]:
    rows = tuple(stages)
    if not rows:
        raise InvalidRolloutPlan("A rollout needs at least one stage")
    seen: set[str] = set()
    previous = 0
    for idx, stage in enumerate(rows):
        if not stage.name:
            raise InvalidRolloutPlan(f"Stage #{idx} has no name")
        if stage.name in seen:
            raise InvalidRolloutPlan(f"Duplicate stage name: {stage.name}")
        seen.add(stage.name)
        if not 0 <= stage.traffic_percent <= 100:
            raise InvalidRolloutPlan(f"Stage {stage.name}: traffic_percent must be within [0, 100]")
        if stage.traffic_percent < previous:
            raise InvalidRolloutPlan(
                f"Stage {stage.name}: traffic_percent {stage.traffic_percent} < previous {previous}"
            )
        if stage.dwell_sec < 0:
            raise InvalidRolloutPlan(f"Stage {stage.name}: dwell_sec must be >= 0")
        if stage.terminal and idx != len(rows) - 1:
            raise InvalidRolloutPlan(f"Stage {stage.name} routes 100% and must be the last stage")
        previous = stage.traffic_percent
    if not rows[-1].terminal:
        raise InvalidRolloutPlan("The last stage must route 100% of traffic")
    return rows


@dataclass(frozen=True, slots=True)
class MetricSample:
    error_rate: float
    response_time_ms: float
    throughput: float
    source: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not 0.0 <= self.error_rate <= 1.0:
            raise ValueError(f"error_rate must be within [0, 1], got {self.error_rate}")
        if self.response_time_ms < 0:
            raise ValueError(f"response_time_ms must be >= 0, got {self.response_time_ms}")
        if self.throughput < 0:
            raise ValueError(f"throughput must be >= 0, got {self.throughput}")

    def tagged(self, source: str) -> "MetricSample":
        return replace(self, source=source)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "error_rate": self.error_rate,
            "response_time_ms": self.response_time_ms,
            "throughput": self.throughput,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "MetricSample":
        return cls(
            error_rate=float(row["error_rate"]),
            response_time_ms=float(row["response_time_ms"]),
            throughput=float(row["throughput"]),
            source=str(row.get("source") or ""),
            timestamp=datetime.fromisoformat(str(row["timestamp"])),
        )


@dataclass(frozen=True, slots=True)
class HealthVerdict:
    healthy: bool
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RolloutOutcome:
    kind: OutcomeKind
    session_id: str
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "session_id": self.session_id, "reason": self.reason}
