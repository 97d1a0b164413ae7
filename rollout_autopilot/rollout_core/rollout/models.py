from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from rollout_core.config import RolloutConfig
from rollout_core.errors import InvalidTransition
from rollout_core.types import (
    BASELINE_SOURCE,
    HealthVerdict,
    MetricSample,
    RolloutStage,
    RolloutStatus,
    validate_stages,
)


ROLLOUT_STATES: tuple[str, ...] = tuple(status.value for status in RolloutStatus)

ALLOWED_TRANSITIONS: dict[RolloutStatus, set[RolloutStatus]] = {
    RolloutStatus.INITIALIZING: {RolloutStatus.RUNNING, RolloutStatus.FAILED},
    RolloutStatus.RUNNING: {RolloutStatus.COMPLETED, RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED},
    RolloutStatus.COMPLETED: set(),
    RolloutStatus.ROLLED_BACK: set(),
    RolloutStatus.FAILED: set(),
}

HISTORY_LIMIT = 200


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return f"ro_{_utc_now():%Y%m%d%H%M%S}_{secrets.token_hex(4)}"


@dataclass(slots=True)
class RolloutSession:
    """Aggregate root of one rollout; mutated only by its executor."""

    service_id: str
    version: str
    stages: tuple[RolloutStage, ...]
    config: RolloutConfig = field(default_factory=RolloutConfig)
    id: str = field(default_factory=new_session_id)
    status: RolloutStatus = RolloutStatus.INITIALIZING
    current_stage_index: int = 0
    baseline: MetricSample | None = None
    samples: list[MetricSample] = field(default_factory=list)
    consecutive_failures: int = 0
    reason: str | None = None
    dry_run: bool = False
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        *,
        service_id: str,
        version: str,
        stages: Iterable[RolloutStage],
        config: RolloutConfig | None = None,
        dry_run: bool = False,
    ) -> "RolloutSession":
        if not service_id:
            raise ValueError("service_id is required")
        if not version:
            raise ValueError("version is required")
        return cls(
            service_id=service_id,
            version=version,
            stages=validate_stages(stages),
            config=config or RolloutConfig(),
            dry_run=dry_run,
        )

    @property
    def current_stage(self) -> RolloutStage:
        return self.stages[self.current_stage_index]

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def touch(self) -> None:
        self.updated_at = _utc_now()

    def append_history(self, event: str, payload: dict[str, Any] | None = None) -> None:
        self.history.append({"ts": _utc_now().isoformat(), "event": event, "payload": payload or {}})
        if len(self.history) > HISTORY_LIMIT:
            del self.history[:-HISTORY_LIMIT]

    def transition(self, new_status: RolloutStatus, *, reason: str | None = None) -> None:
        old_status = self.status
        if new_status not in ALLOWED_TRANSITIONS[old_status]:
            raise InvalidTransition(f"Invalid rollout transition {old_status.value} -> {new_status.value}")
        self.status = new_status
        if reason:
            self.reason = reason
        if new_status.terminal:
            self.finished_at = _utc_now()
        self.touch()
        self.append_history("transition", {"from": old_status.value, "to": new_status.value, "reason": reason or ""})

    def set_baseline(self, baseline: MetricSample) -> None:
        if self.status is not RolloutStatus.INITIALIZING:
            raise ValueError("Baseline can only be captured before the rollout starts")
        if self.baseline is not None:
            raise ValueError("Baseline already captured for this session")
        self.baseline = baseline if baseline.source == BASELINE_SOURCE else baseline.tagged(BASELINE_SOURCE)
        self.touch()

    def append_sample(self, sample: MetricSample) -> int:
        self.samples.append(sample)
        self.touch()
        return len(self.samples) - 1

    def record_verdict(self, verdict: HealthVerdict) -> int:
        if verdict.healthy:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
        return self.consecutive_failures

    def advance_to(self, index: int) -> None:
        if index < self.current_stage_index:
            raise ValueError(f"Stage index cannot move backwards ({self.current_stage_index} -> {index})")
        if index >= len(self.stages):
            raise ValueError(f"Stage index {index} out of range")
        self.current_stage_index = index
        self.touch()

    def stage_completed(self, index: int) -> bool:
        if index < self.current_stage_index:
            return True
        return index == self.current_stage_index and self.status is RolloutStatus.COMPLETED

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service_id": self.service_id,
            "version": self.version,
            "status": self.status.value,
            "reason": self.reason,
            "dry_run": self.dry_run,
            "current_stage_index": self.current_stage_index,
            "consecutive_failures": self.consecutive_failures,
            "stages": [stage.to_dict() for stage in self.stages],
            "config": self.config.model_dump(),
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "samples": [sample.to_dict() for sample in self.samples],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "history": list(self.history),
        }

    @classmethod
    def from_snapshot(cls, payload: dict[str, Any]) -> "RolloutSession":
        baseline = payload.get("baseline")
        finished_at = payload.get("finished_at")
        return cls(
            id=str(payload["id"]),
            service_id=str(payload["service_id"]),
            version=str(payload["version"]),
            stages=tuple(
                RolloutStage(name=str(row["name"]), traffic_percent=int(row["traffic_percent"]), dwell_sec=float(row.get("dwell_sec", 0.0)))
                for row in payload.get("stages", [])
            ),
            config=RolloutConfig.model_validate(payload.get("config") or {}),
            status=RolloutStatus(str(payload.get("status") or RolloutStatus.INITIALIZING.value)),
            current_stage_index=int(payload.get("current_stage_index") or 0),
            baseline=MetricSample.from_dict(baseline) if isinstance(baseline, dict) else None,
            samples=[MetricSample.from_dict(row) for row in payload.get("samples", [])],
            consecutive_failures=int(payload.get("consecutive_failures") or 0),
            reason=payload.get("reason"),
            dry_run=bool(payload.get("dry_run", False)),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            updated_at=datetime.fromisoformat(str(payload["updated_at"])),
            finished_at=datetime.fromisoformat(str(finished_at)) if finished_at else None,
            history=list(payload.get("history") or []),
        )
