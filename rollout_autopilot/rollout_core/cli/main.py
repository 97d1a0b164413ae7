from __future__ import annotations

import json
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from rollout_core.config import ControllerSettings, load_settings
from rollout_core.errors import RollbackFailed, RolloutError
from rollout_core.events import EventLog
from rollout_core.integrations.factory import build_metrics, build_router, resolve_store_root
from rollout_core.rollout import RolloutController, SessionStore
from rollout_core.types import OutcomeKind


app = typer.Typer(help="Rollout Autopilot CLI")
console = Console()

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG = PROJECT_ROOT / "rollout_config.yaml"

STATUS_STYLES = {
    "completed": "green",
    "rolled_back": "yellow",
    "failed": "red",
    "running": "cyan",
    "initializing": "white",
}


def _load_settings(config_path: str | None) -> ControllerSettings:
    explicit = config_path or os.environ.get("ROLLOUT_CONFIG_PATH")
    if explicit:
        try:
            return load_settings(explicit)
        except (FileNotFoundError, ValueError) as exc:
            raise typer.BadParameter(str(exc)) from exc
    if DEFAULT_CONFIG.exists():
        return load_settings(DEFAULT_CONFIG)
    return ControllerSettings()


def _store(settings: ControllerSettings) -> SessionStore:
    return SessionStore(resolve_store_root(settings, PROJECT_ROOT))


def _events(settings: ControllerSettings, quiet: bool) -> EventLog:
    log_path = settings.store.event_log
    if log_path and not Path(log_path).is_absolute():
        log_path = str(PROJECT_ROOT / log_path)
    return EventLog(path=log_path, echo=not quiet)


def _run(version: str, service: str | None, config: str | None, *, dry_run: bool, quiet: bool) -> None:
    settings = _load_settings(config)
    service_id = service or settings.service_id
    store = _store(settings)
    controller = RolloutController(
        build_router(settings.router),
        build_metrics(settings.metrics),
        store=store,
        events=_events(settings, quiet),
    )
    label = "Dry run" if dry_run else "Canary rollout"
    console.print(f"{label} | service={service_id} | version={version} | stages={len(settings.stages)}")
    try:
        outcome = controller.start_rollout(service_id, version, settings.stage_plan(), settings.rollout, dry_run=dry_run)
    except RollbackFailed as exc:
        console.print(f"[red]Rollback failed, manual intervention required[/red] session={exc.session_id}: {exc}")
        raise typer.Exit(code=2) from exc
    except RolloutError as exc:
        console.print(f"[red]Rollout error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    style = STATUS_STYLES.get(outcome.kind.value, "white")
    console.print(f"[{style}]{outcome.kind.value}[/{style}] session={outcome.session_id}" + (f" reason={outcome.reason}" if outcome.reason else ""))
    console.print(f"Report saved under {store.reports_dir}")
    if outcome.kind is not OutcomeKind.COMPLETED:
        raise typer.Exit(code=1)


@app.command("deploy")
def deploy(
    version: str = typer.Argument(..., help="Version to roll out"),
    service: str = typer.Option("", "--service", help="Service id (defaults to config service_id)"),
    config: str = typer.Option("", "--config", help="Path to rollout config"),
    quiet: bool = typer.Option(False, "--quiet", help="Do not echo JSON event lines"),
) -> None:
    _run(version, service or None, config or None, dry_run=False, quiet=quiet)


@app.command("dry-run")
def dry_run(
    version: str = typer.Argument(..., help="Version to simulate"),
    service: str = typer.Option("", "--service"),
    config: str = typer.Option("", "--config", help="Path to rollout config"),
    quiet: bool = typer.Option(False, "--quiet"),
) -> None:
    _run(version, service or None, config or None, dry_run=True, quiet=quiet)


@app.command("plan")
def plan(config: str = typer.Option("", "--config", help="Path to rollout config")) -> None:
    settings = _load_settings(config or None)
    table = Table("#", "stage", "traffic_pct", "dwell_sec")
    for idx, stage in enumerate(settings.stage_plan(), start=1):
        table.add_row(str(idx), stage.name, str(stage.traffic_percent), f"{stage.dwell_sec:g}")
    console.print(table)
    cfg = settings.rollout
    console.print(
        f"warmup={cfg.warmup_period_sec:g}s check_interval={cfg.check_interval_sec:g}s "
        f"failure_threshold={cfg.failure_threshold} error_max={cfg.absolute_error_threshold:g} "
        f"latency_max={cfg.absolute_latency_threshold_ms:g}ms throughput_floor={cfg.relative_throughput_floor:g}"
    )


@app.command("status")
def status(
    session_id: str = typer.Option("", "--id", help="Show a single session"),
    config: str = typer.Option("", "--config", help="Path to rollout config"),
) -> None:
    store = _store(_load_settings(config or None))
    if session_id:
        payload = store.raw(session_id)
        if payload is None:
            raise typer.BadParameter(f"session '{session_id}' not found")
        stages = payload.get("stages") or []
        idx = int(payload.get("current_stage_index") or 0)
        console.print(f"Session: {payload['id']}")
        console.print(f"  Service: {payload['service_id']}  Version: {payload['version']}")
        console.print(f"  Status: {payload['status']}" + (f" ({payload['reason']})" if payload.get("reason") else ""))
        console.print(f"  Current Stage: {idx + 1}/{len(stages)}")
        console.print(f"  Samples: {len(payload.get('samples') or [])}  Consecutive failures: {payload.get('consecutive_failures', 0)}")
        console.print(f"  Abort requested: {store.abort_requested(session_id)}")
        return

    rows = store.list_sessions()
    if not rows:
        console.print("No rollout sessions found")
        return
    table = Table("id", "service", "version", "status", "stage", "dry_run", "created_at")
    for row in rows:
        style = STATUS_STYLES.get(str(row["status"]), "white")
        table.add_row(
            str(row["id"]),
            str(row["service_id"]),
            str(row["version"]),
            f"[{style}]{row['status']}[/{style}]",
            f"{row['current_stage']} ({row['stage_count']})",
            str(row["dry_run"]),
            str(row["created_at"]),
        )
    console.print(table)


@app.command("abort")
def abort(
    session_id: str = typer.Argument(..., help="Session to abort"),
    reason: str = typer.Option("operator abort", "--reason"),
    config: str = typer.Option("", "--config", help="Path to rollout config"),
) -> None:
    store = _store(_load_settings(config or None))
    payload = store.raw(session_id)
    if payload is None:
        raise typer.BadParameter(f"session '{session_id}' not found")
    if payload.get("status") in {"completed", "rolled_back", "failed"}:
        console.print(f"Session {session_id} already finished ({payload['status']})")
        raise typer.Exit(code=1)
    store.request_abort(session_id, reason=reason)
    console.print(f"Abort requested for {session_id}; the running controller will roll back at its next check")


@app.command("report")
def report(
    session_id: str = typer.Argument(..., help="Session id"),
    config: str = typer.Option("", "--config", help="Path to rollout config"),
) -> None:
    store = _store(_load_settings(config or None))
    payload = store.load_report(session_id)
    if payload is None:
        raise typer.BadParameter(f"no report for session '{session_id}'")
    console.print_json(json.dumps(payload))


if __name__ == "__main__":
    app()
