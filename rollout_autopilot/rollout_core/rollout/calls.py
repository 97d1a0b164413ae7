from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar

from rollout_core.clock import CancellationToken, Clock


T = TypeVar("T")


class PendingCall:
    """Handle on a collaborator call running on its own daemon thread."""

    def __init__(self, fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any], *, name: str) -> None:
        self.name = name
        self.done = threading.Event()
        self._fn = fn
        self._args = args
        self._kwargs = kwargs
        self._value: Any = None
        self._error: Exception | None = None
        self.thread = threading.Thread(target=self._run, name=f"rollout-{name}", daemon=True)

    def _run(self) -> None:
        try:
            self._value = self._fn(*self._args, **self._kwargs)
        except Exception as exc:
            self._error = exc
        finally:
            self.done.set()

    def start(self) -> "PendingCall":
        self.thread.start()
        return self

    @property
    def finished(self) -> bool:
        return self.done.is_set()

    def wait(self, timeout_sec: float) -> bool:
        return self.done.wait(max(0.0, timeout_sec))

    def result(self) -> Any:
        if self._error is not None:
            raise self._error
        return self._value


def start_call(fn: Callable[..., Any], *args: Any, name: str = "call", **kwargs: Any) -> PendingCall:
    return PendingCall(fn, args, kwargs, name=name).start()


def call_with_timeout(
    fn: Callable[..., T],
    timeout_sec: float,
    *args: Any,
    name: str = "call",
    on_abandon: Callable[[PendingCall], None] | None = None,
    **kwargs: Any,
) -> T:
    """Run ``fn`` on a daemon thread and give up after ``timeout_sec``.

    A call that overruns is abandoned, not interrupted. ``on_abandon`` receives
    its handle so the caller can wait for it to land before issuing a call
    that must win over it.
    """
    pending = start_call(fn, *args, name=name, **kwargs)
    if not pending.wait(timeout_sec):
        if on_abandon is not None:
            on_abandon(pending)
        raise TimeoutError(f"{name} did not finish within {timeout_sec}s")
    return pending.result()


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    retry_on: tuple[type[Exception], ...],
    clock: Clock,
    backoff_sec: float = 0.0,
    cancel: CancellationToken | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Call ``fn`` up to ``attempts`` times with exponential backoff between tries."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            last_error = exc
            if attempt == attempts:
                break
            if on_retry is not None:
                on_retry(attempt, exc)
            delay = backoff_sec * (2 ** (attempt - 1))
            if clock.sleep(delay, cancel):
                break
    assert last_error is not None
    raise last_error
