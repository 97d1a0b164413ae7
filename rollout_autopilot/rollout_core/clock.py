from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Protocol


class CancellationToken:
    """External stop signal for one rollout session.

    ``watch`` is polled on every check so that an abort written somewhere else
    (for example in the session store by another process) is picked up. It
    returns a falsy value, or the abort reason (``True`` means no reason).
    """

    def __init__(self, *, watch: Callable[[], bool | str | None] | None = None) -> None:
        self._event = threading.Event()
        self._watch = watch
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._watch is not None:
            hit = self._watch()
            if hit:
                self.cancel(hit if isinstance(hit, str) else "abort_requested")
                return True
        return False

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class Clock(Protocol):
    def now(self) -> float: ...

    def utcnow(self) -> datetime: ...

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool: ...


class SystemClock:
    def __init__(self, poll_sec: float = 1.0) -> None:
        self.poll_sec = poll_sec

    def now(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        """Wait ``seconds``; returns True when the wait ended through cancellation."""
        if cancel is None:
            if seconds > 0:
                time.sleep(seconds)
            return False
        deadline = self.now() + max(0.0, seconds)
        while True:
            if cancel.is_cancelled():
                return True
            remaining = deadline - self.now()
            if remaining <= 0:
                return False
            cancel.wait(min(remaining, self.poll_sec))
