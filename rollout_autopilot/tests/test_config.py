from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from rollout_core.config import ControllerSettings, MetricsConfig, RolloutConfig, RouterConfig, load_settings
from rollout_core.integrations import HttpMetricsSource, HttpTrafficRouter, InMemoryTrafficRouter, SimulatedMetricsSource
from rollout_core.integrations.factory import build_metrics, build_router, resolve_store_root


CONFIG_YAML = """
service_id: checkout
rollout:
  failure_threshold: 2
  check_interval_sec: 15
  regression_multiplier:
    error_rate: 3.0
stages:
  - {name: canary, traffic_percent: 10, dwell_sec: 60}
  - {name: full, traffic_percent: 100}
router:
  kind: http
  base_url: ${ROUTER_URL}
  token: ${ROUTER_TOKEN}
metrics:
  kind: simulated
  seed: 7
  degrade_after: 4
  degraded_error_rate: 0.3
store:
  root: /var/tmp/rollouts
"""


def test_defaults_match_documented_values() -> None:
    cfg = RolloutConfig()
    assert cfg.failure_threshold == 3
    assert cfg.check_interval_sec == 30
    assert cfg.warmup_period_sec == 60
    assert cfg.absolute_error_threshold == 0.05
    assert cfg.absolute_latency_threshold_ms == 5000
    assert cfg.relative_throughput_floor == 0.8
    assert cfg.regression_multiplier.error_rate == 2.0
    assert cfg.regression_multiplier.response_time == 1.5

    settings = ControllerSettings()
    assert [(s.name, s.traffic_percent) for s in settings.stage_plan()] == [
        ("canary-1", 5),
        ("canary-2", 10),
        ("canary-3", 25),
        ("canary-4", 50),
        ("full", 100),
    ]


def test_load_settings_expands_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("ROUTER_URL", "http://router.local")
    monkeypatch.setenv("ROUTER_TOKEN", "s3cret")
    path = tmp_path / "rollout.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")

    settings = load_settings(path)
    assert settings.service_id == "checkout"
    assert settings.rollout.failure_threshold == 2
    assert settings.rollout.regression_multiplier.error_rate == 3.0
    assert settings.rollout.regression_multiplier.response_time == 1.5
    assert settings.router.base_url == "http://router.local"
    assert settings.router.token == "s3cret"
    assert [s.dwell_sec for s in settings.stage_plan()] == [60, 0]

    router = build_router(settings.router)
    assert isinstance(router, HttpTrafficRouter)
    assert router.token == "s3cret"
    metrics = build_metrics(settings.metrics)
    assert isinstance(metrics, SimulatedMetricsSource)
    assert metrics.degrade_after == 4
    assert metrics.degraded_error_rate == 0.3
    assert resolve_store_root(settings, tmp_path) == Path("/var/tmp/rollouts")


def test_load_settings_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "missing.yaml")

    unknown_key = tmp_path / "unknown.yaml"
    unknown_key.write_text("rollout:\n  failure_treshold: 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(unknown_key)

    bad_plan = tmp_path / "bad_plan.yaml"
    bad_plan.write_text("stages:\n  - {name: a, traffic_percent: 50}\n", encoding="utf-8")
    with pytest.raises(ValueError, match="100%"):
        load_settings(bad_plan)


def test_http_collaborators_need_urls() -> None:
    with pytest.raises(ValidationError):
        ControllerSettings.model_validate({"router": {"kind": "http"}})
    with pytest.raises(ValidationError):
        ControllerSettings.model_validate({"metrics": {"kind": "http"}})

    settings = ControllerSettings.model_validate({"metrics": {"kind": "http", "url": "http://metrics.local/v1"}})
    assert isinstance(build_metrics(settings.metrics), HttpMetricsSource)
    assert isinstance(build_router(settings.router), InMemoryTrafficRouter)


def test_rollout_config_is_frozen_and_bounded() -> None:
    cfg = RolloutConfig()
    with pytest.raises(ValidationError):
        cfg.failure_threshold = 5  # type: ignore[misc]
    with pytest.raises(ValidationError):
        RolloutConfig(failure_threshold=0)
    with pytest.raises(ValidationError):
        RolloutConfig(absolute_error_threshold=1.5)


def test_factory_rejects_http_collaborators_without_urls() -> None:
    # model_construct skips validation, as when settings are built in code.
    with pytest.raises(ValueError, match="router.base_url"):
        build_router(RouterConfig.model_construct(kind="http", base_url=None))
    with pytest.raises(ValueError, match="metrics.url"):
        build_metrics(MetricsConfig.model_construct(kind="http", url=None))


def test_degraded_error_rate_defaults_and_bounds() -> None:
    metrics = build_metrics(MetricsConfig(degrade_after=0))
    assert isinstance(metrics, SimulatedMetricsSource)
    assert metrics.degraded_error_rate == 0.12
    with pytest.raises(ValidationError):
        MetricsConfig(degraded_error_rate=1.5)
