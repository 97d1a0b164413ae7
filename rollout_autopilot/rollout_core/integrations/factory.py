from __future__ import annotations

from pathlib import Path

from rollout_core.config import ControllerSettings, MetricsConfig, RouterConfig

from .base import MetricsSource, TrafficRouter
from .http import HttpMetricsSource, HttpTrafficRouter
from .simulated import InMemoryTrafficRouter, SimulatedMetricsSource


def build_router(cfg: RouterConfig) -> TrafficRouter:
    if cfg.kind == "http":
        if not cfg.base_url:
            raise ValueError("router.base_url is required when router.kind is http")
        return HttpTrafficRouter(cfg.base_url, timeout_sec=cfg.timeout_sec, token=cfg.token)
    return InMemoryTrafficRouter()


def build_metrics(cfg: MetricsConfig) -> MetricsSource:
    if cfg.kind == "http":
        if not cfg.url:
            raise ValueError("metrics.url is required when metrics.kind is http")
        return HttpMetricsSource(cfg.url, timeout_sec=cfg.timeout_sec, token=cfg.token)
    return SimulatedMetricsSource(
        error_rate=cfg.error_rate,
        response_time_ms=cfg.response_time_ms,
        throughput=cfg.throughput,
        jitter=cfg.jitter,
        seed=cfg.seed,
        degrade_after=cfg.degrade_after,
        degraded_error_rate=cfg.degraded_error_rate,
    )


def resolve_store_root(settings: ControllerSettings, project_root: Path) -> Path:
    root = Path(settings.store.root)
    return root if root.is_absolute() else (project_root / root).resolve()
