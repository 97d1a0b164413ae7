from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from rollout_core.errors import InvalidRolloutPlan
from rollout_core.types import RolloutStage, validate_stages


class RegressionMultiplier(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    error_rate: float = Field(default=2.0, gt=0)
    response_time: float = Field(default=1.5, gt=0)


class RolloutConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    failure_threshold: int = Field(default=3, ge=1)
    check_interval_sec: float = Field(default=30.0, gt=0)
    warmup_period_sec: float = Field(default=60.0, ge=0)
    absolute_error_threshold: float = Field(default=0.05, gt=0, le=1)
    absolute_latency_threshold_ms: float = Field(default=5000.0, gt=0)
    relative_throughput_floor: float = Field(default=0.8, ge=0, le=1)
    regression_multiplier: RegressionMultiplier = Field(default_factory=RegressionMultiplier)

    baseline_samples: int = Field(default=1, ge=1, le=50)
    baseline_interval_sec: float = Field(default=5.0, ge=0)
    baseline_timeout_sec: float = Field(default=10.0, gt=0)
    metrics_timeout_sec: float = Field(default=10.0, gt=0)
    metrics_retries: int = Field(default=3, ge=0, le=10)
    metrics_backoff_sec: float = Field(default=2.0, ge=0)
    traffic_shift_timeout_sec: float = Field(default=30.0, gt=0)
    traffic_shift_attempts: int = Field(default=2, ge=1, le=5)
    rollback_timeout_sec: float = Field(default=30.0, gt=0)
    rollback_attempts: int = Field(default=3, ge=1, le=5)
    rollback_verification_sec: float = Field(default=10.0, ge=0)


class StageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    traffic_percent: int = Field(ge=0, le=100)
    dwell_sec: float = Field(default=0.0, ge=0)

    def to_stage(self) -> RolloutStage:
        return RolloutStage(name=self.name, traffic_percent=self.traffic_percent, dwell_sec=self.dwell_sec)


DEFAULT_STAGES: list[dict[str, Any]] = [
    {"name": "canary-1", "traffic_percent": 5, "dwell_sec": 300},
    {"name": "canary-2", "traffic_percent": 10, "dwell_sec": 600},
    {"name": "canary-3", "traffic_percent": 25, "dwell_sec": 900},
    {"name": "canary-4", "traffic_percent": 50, "dwell_sec": 1200},
    {"name": "full", "traffic_percent": 100, "dwell_sec": 0},
]


class RouterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["http", "memory"] = "memory"
    base_url: str | None = None
    timeout_sec: float = Field(default=30.0, gt=0)
    token: str | None = None

    @model_validator(mode="after")
    def validate_url(self) -> "RouterConfig":
        if self.kind == "http" and not self.base_url:
            raise ValueError("router.base_url is required when router.kind is http")
        return self


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["http", "simulated"] = "simulated"
    url: str | None = None
    timeout_sec: float = Field(default=10.0, gt=0)
    token: str | None = None
    seed: int | None = None
    error_rate: float = Field(default=0.01, ge=0, le=1)
    response_time_ms: float = Field(default=1250.0, ge=0)
    throughput: float = Field(default=900.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)
    degrade_after: int | None = Field(default=None, ge=0)
    degraded_error_rate: float = Field(default=0.12, ge=0, le=1)

    @model_validator(mode="after")
    def validate_url(self) -> "MetricsConfig":
        if self.kind == "http" and not self.url:
            raise ValueError("metrics.url is required when metrics.kind is http")
        return self


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    root: str = "user_data/rollouts"
    event_log: str | None = None


class ControllerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    service_id: str = "web-frontend"
    rollout: RolloutConfig = Field(default_factory=RolloutConfig)
    stages: list[StageConfig] = Field(default_factory=lambda: [StageConfig(**row) for row in DEFAULT_STAGES])
    router: RouterConfig = Field(default_factory=RouterConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @model_validator(mode="after")
    def validate_plan(self) -> "ControllerSettings":
        try:
            validate_stages(self.stage_plan())
        except InvalidRolloutPlan as exc:
            raise ValueError(str(exc)) from exc
        return self

    def stage_plan(self) -> list[RolloutStage]:
        return [row.to_stage() for row in self.stages]


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def load_settings(path: str | Path) -> ControllerSettings:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    payload = _expand_env(payload)
    try:
        return ControllerSettings.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid rollout config: {exc}") from exc
