from __future__ import annotations

import json
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import RolloutSession


_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_load(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return default


def _json_save(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    tmp.replace(path)


class SessionStore:
    """Key-value snapshots of rollout sessions, one JSON document per id.

    Abort requests live in their own marker files so that a running executor
    saving its snapshot never overwrites them.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.sessions_dir = self.root / "sessions"
        self.reports_dir = self.root / "reports"
        self.aborts_dir = self.root / "aborts"
        self._lock = threading.Lock()

    def _path(self, base: Path, session_id: str) -> Path:
        if not _ID_RE.match(session_id or ""):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return base / f"{session_id}.json"

    def save(self, session: RolloutSession) -> Path:
        path = self._path(self.sessions_dir, session.id)
        with self._lock:
            _json_save(path, session.snapshot())
        return path

    def raw(self, session_id: str) -> dict[str, Any] | None:
        payload = _json_load(self._path(self.sessions_dir, session_id), None)
        return payload if isinstance(payload, dict) else None

    def load(self, session_id: str) -> RolloutSession | None:
        payload = self.raw(session_id)
        if payload is None:
            return None
        return RolloutSession.from_snapshot(payload)

    def list_sessions(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        if not self.sessions_dir.exists():
            return rows
        for path in self.sessions_dir.glob("*.json"):
            payload = _json_load(path, None)
            if not isinstance(payload, dict):
                continue
            stages = payload.get("stages") or []
            idx = int(payload.get("current_stage_index") or 0)
            rows.append(
                {
                    "id": payload.get("id"),
                    "service_id": payload.get("service_id"),
                    "version": payload.get("version"),
                    "status": payload.get("status"),
                    "reason": payload.get("reason"),
                    "dry_run": bool(payload.get("dry_run", False)),
                    "current_stage": stages[idx]["name"] if 0 <= idx < len(stages) else None,
                    "stage_count": len(stages),
                    "created_at": payload.get("created_at"),
                    "updated_at": payload.get("updated_at"),
                }
            )
        rows.sort(key=lambda row: str(row.get("created_at") or ""), reverse=True)
        return rows

    def request_abort(self, session_id: str, *, reason: str = "operator abort") -> bool:
        if self.raw(session_id) is None:
            return False
        with self._lock:
            _json_save(self._path(self.aborts_dir, session_id), {"requested_at": _utc_iso(), "reason": reason})
        return True

    def abort_requested(self, session_id: str) -> bool:
        return self._path(self.aborts_dir, session_id).exists()

    def abort_reason(self, session_id: str) -> str | None:
        path = self._path(self.aborts_dir, session_id)
        if not path.exists():
            return None
        payload = _json_load(path, {})
        reason = payload.get("reason") if isinstance(payload, dict) else None
        return str(reason) if reason else "abort_requested"

    def clear_abort(self, session_id: str) -> None:
        path = self._path(self.aborts_dir, session_id)
        with self._lock:
            if path.exists():
                path.unlink()

    def save_report(self, session_id: str, report: dict[str, Any]) -> Path:
        path = self._path(self.reports_dir, session_id)
        with self._lock:
            _json_save(path, report)
        return path

    def load_report(self, session_id: str) -> dict[str, Any] | None:
        payload = _json_load(self._path(self.reports_dir, session_id), None)
        return payload if isinstance(payload, dict) else None
