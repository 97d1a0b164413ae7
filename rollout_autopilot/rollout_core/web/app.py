from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from rollout_core.config import ControllerSettings, RolloutConfig, StageConfig, load_settings
from rollout_core.errors import RolloutError
from rollout_core.events import EventLog
from rollout_core.integrations.factory import build_metrics, build_router, resolve_store_root
from rollout_core.rollout import RolloutController, RolloutCoordinator, SessionStore


APP_VERSION = "0.3.0"
PROJECT_ROOT = Path(__file__).resolve().parents[2]


class RolloutStartBody(BaseModel):
    version: str = Field(min_length=1)
    service_id: str | None = None
    stages: list[StageConfig] | None = None
    config: RolloutConfig | None = None
    dry_run: bool = False


class RolloutAbortBody(BaseModel):
    reason: str = "operator abort"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def load_app_settings() -> ControllerSettings:
    explicit = os.getenv("ROLLOUT_CONFIG_PATH", "")
    if explicit:
        return load_settings(explicit)
    default_path = PROJECT_ROOT / "rollout_config.yaml"
    if default_path.exists():
        return load_settings(default_path)
    return ControllerSettings()


def build_coordinator(settings: ControllerSettings) -> RolloutCoordinator:
    store = SessionStore(resolve_store_root(settings, PROJECT_ROOT))
    log_path = settings.store.event_log
    if log_path and not Path(log_path).is_absolute():
        log_path = str(PROJECT_ROOT / log_path)
    controller = RolloutController(
        build_router(settings.router),
        build_metrics(settings.metrics),
        store=store,
        events=EventLog(path=log_path),
    )
    return RolloutCoordinator(controller=controller)


def create_app(settings: ControllerSettings | None = None, coordinator: RolloutCoordinator | None = None) -> FastAPI:
    settings = settings or load_app_settings()
    coordinator = coordinator or build_coordinator(settings)
    store = coordinator.controller.store
    if store is None:
        raise ValueError("The web API needs a controller with a session store")

    app = FastAPI(title="Rollout Autopilot API", version=APP_VERSION)

    @app.get("/api/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "ok": True,
            "time": utc_now_iso(),
            "version": APP_VERSION,
            "service_id": settings.service_id,
            "active_rollouts": coordinator.active(),
            "router": settings.router.kind,
            "metrics": settings.metrics.kind,
        }

    @app.get("/api/v1/rollouts")
    def list_rollouts() -> dict[str, Any]:
        return {"items": store.list_sessions()}

    @app.get("/api/v1/rollouts/{session_id}")
    def rollout_status(session_id: str) -> dict[str, Any]:
        try:
            payload = coordinator.status(session_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if payload is None:
            raise HTTPException(status_code=404, detail=f"Rollout {session_id} not found")
        return payload

    @app.post("/api/v1/rollouts")
    def start_rollout(body: RolloutStartBody) -> dict[str, Any]:
        stages = [row.to_stage() for row in body.stages] if body.stages else settings.stage_plan()
        try:
            return coordinator.start_async(
                service_id=body.service_id or settings.service_id,
                version=body.version,
                stages=stages,
                config=body.config or settings.rollout,
                dry_run=body.dry_run,
            )
        except RolloutError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/api/v1/rollouts/{session_id}/abort")
    def abort_rollout(session_id: str, body: RolloutAbortBody | None = None) -> dict[str, Any]:
        reason = (body or RolloutAbortBody()).reason
        try:
            known = store.raw(session_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if known is None:
            raise HTTPException(status_code=404, detail=f"Rollout {session_id} not found")
        if known.get("status") in {"completed", "rolled_back", "failed"}:
            raise HTTPException(status_code=409, detail=f"Rollout {session_id} already {known['status']}")
        signalled = coordinator.cancel(session_id, reason)
        if not signalled:
            store.request_abort(session_id, reason=reason)
        return {"ok": True, "session_id": session_id, "reason": reason, "in_process": signalled}

    @app.get("/api/v1/rollouts/{session_id}/report")
    def rollout_report(session_id: str) -> dict[str, Any]:
        try:
            payload = store.load_report(session_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if payload is None:
            raise HTTPException(status_code=404, detail=f"No report for rollout {session_id}")
        return payload

    return app
