from __future__ import annotations

import threading
import traceback
from typing import Any, Sequence

from rollout_core.clock import CancellationToken
from rollout_core.config import RolloutConfig
from rollout_core.errors import RolloutError
from rollout_core.types import RolloutOutcome, RolloutStage

from .controller import RolloutController
from .models import RolloutSession


class RolloutCoordinator:
    """Runs independent rollout sessions on background threads.

    Sessions share nothing; the registry below is the only state touched by
    more than one thread.
    """

    def __init__(self, *, controller: RolloutController) -> None:
        self.controller = controller
        self._threads: dict[str, threading.Thread] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._sessions: dict[str, RolloutSession] = {}
        self._outcomes: dict[str, RolloutOutcome] = {}
        self._errors: dict[str, str] = {}
        self._lock = threading.Lock()

    def _token_for(self, session_id: str) -> CancellationToken:
        store = self.controller.store
        if store is None:
            return CancellationToken()
        return CancellationToken(watch=lambda: store.abort_reason(session_id))

    def start_async(
        self,
        *,
        service_id: str,
        version: str,
        stages: Sequence[RolloutStage],
        config: RolloutConfig | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        session = self.controller.create_session(service_id, version, stages, config, dry_run=dry_run)
        token = self._token_for(session.id)

        def _runner() -> None:
            try:
                outcome = self.controller.run_session(session, cancel=token)
            except RolloutError as exc:
                with self._lock:
                    self._errors[session.id] = f"{type(exc).__name__}: {exc}"
                self.controller.events.emit("rollout_error", session_id=session.id, error=str(exc))
            except Exception:
                err = traceback.format_exc()
                with self._lock:
                    self._errors[session.id] = err
                self.controller.events.emit("rollout_error", session_id=session.id, error=err)
            else:
                with self._lock:
                    self._outcomes[session.id] = outcome

        th = threading.Thread(target=_runner, name=f"rollout-{session.id}", daemon=True)
        with self._lock:
            self._threads[session.id] = th
            self._tokens[session.id] = token
            self._sessions[session.id] = session
        th.start()
        return {"ok": True, "session_id": session.id, "status": session.status.value}

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        with self._lock:
            token = self._tokens.get(session_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def wait(self, session_id: str, timeout: float | None = None) -> RolloutOutcome | None:
        with self._lock:
            th = self._threads.get(session_id)
        if th is not None:
            th.join(timeout)
        with self._lock:
            return self._outcomes.get(session_id)

    def active(self) -> list[str]:
        with self._lock:
            return [sid for sid, th in self._threads.items() if th.is_alive()]

    def status(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            th = self._threads.get(session_id)
            session = self._sessions.get(session_id)
            outcome = self._outcomes.get(session_id)
            error = self._errors.get(session_id)
        payload: dict[str, Any] | None = None
        if self.controller.store is not None:
            payload = self.controller.store.raw(session_id)
        if payload is None and session is not None:
            payload = session.snapshot()
        if payload is None:
            return None
        payload["thread_alive"] = bool(th and th.is_alive())
        payload["outcome"] = outcome.to_dict() if outcome else None
        payload["error"] = error
        return payload
