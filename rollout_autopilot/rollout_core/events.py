from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventLog:
    """JSON-lines event log; one compact object per line."""

    def __init__(self, stream: TextIO | None = None, *, path: str | Path | None = None, echo: bool = True) -> None:
        self.stream = stream
        self.path = Path(path) if path else None
        self.echo = echo
        self._lock = threading.Lock()

    def emit(self, event: str, **payload: Any) -> dict[str, Any]:
        row = {"ts": _now(), "event": event, **payload}
        line = json.dumps(row, separators=(",", ":"), default=str)
        with self._lock:
            if self.echo:
                print(line, file=self.stream or sys.stdout)
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        return row


class MemoryEventLog(EventLog):
    def __init__(self) -> None:
        super().__init__(echo=False)
        self.rows: list[dict[str, Any]] = []

    def emit(self, event: str, **payload: Any) -> dict[str, Any]:
        row = super().emit(event, **payload)
        self.rows.append(row)
        return row

    def events(self) -> list[str]:
        return [str(row["event"]) for row in self.rows]
