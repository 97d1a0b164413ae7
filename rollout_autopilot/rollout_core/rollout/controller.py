from __future__ import annotations

from typing import Callable, Sequence

from rollout_core.clock import CancellationToken, Clock, SystemClock
from rollout_core.config import RolloutConfig
from rollout_core.errors import MetricsUnavailable, RolloutError
from rollout_core.events import EventLog
from rollout_core.integrations.base import MetricsSource, TrafficRouter
from rollout_core.types import OutcomeKind, RolloutOutcome, RolloutStage, RolloutStatus

from .baseline import BaselineCollector
from .executor import StageExecutor
from .health import HealthEvaluator, HealthThresholds
from .models import RolloutSession
from .report import build_report
from .store import SessionStore


class RolloutController:
    """Entry point for progressive rollouts.

    ``start_rollout`` always ends with a terminal session: it returns a
    ``RolloutOutcome`` or raises a ``RolloutError`` (``InvalidRolloutPlan``
    before anything happens, ``RollbackFailed`` when traffic could not be
    restored).
    """

    def __init__(
        self,
        router: TrafficRouter,
        metrics: MetricsSource,
        *,
        store: SessionStore | None = None,
        events: EventLog | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.router = router
        self.metrics = metrics
        self.store = store
        self.events = events or EventLog()
        self.clock = clock or SystemClock()

    def create_session(
        self,
        service_id: str,
        version: str,
        stages: Sequence[RolloutStage],
        config: RolloutConfig | None = None,
        *,
        dry_run: bool = False,
    ) -> RolloutSession:
        try:
            session = RolloutSession.create(service_id=service_id, version=version, stages=stages, config=config, dry_run=dry_run)
        except ValueError as exc:
            raise RolloutError(str(exc)) from exc
        if self.store is not None:
            self.store.save(session)
        return session

    def _executor(self, config: RolloutConfig) -> StageExecutor:
        return StageExecutor(
            self.router,
            self.metrics,
            HealthEvaluator(HealthThresholds.from_config(config)),
            clock=self.clock,
            events=self.events,
            store=self.store,
        )

    def _token(self, session: RolloutSession, cancel: CancellationToken | None) -> CancellationToken:
        if cancel is not None:
            return cancel
        if self.store is None:
            return CancellationToken()
        store = self.store
        session_id = session.id
        watch: Callable[[], str | None] = lambda: store.abort_reason(session_id)
        return CancellationToken(watch=watch)

    def start_rollout(
        self,
        service_id: str,
        version: str,
        stages: Sequence[RolloutStage],
        config: RolloutConfig | None = None,
        *,
        cancel: CancellationToken | None = None,
        dry_run: bool = False,
    ) -> RolloutOutcome:
        session = self.create_session(service_id, version, stages, config, dry_run=dry_run)
        return self.run_session(session, cancel=cancel)

    def run_session(self, session: RolloutSession, *, cancel: CancellationToken | None = None) -> RolloutOutcome:
        token = self._token(session, cancel)
        executor = self._executor(session.config)
        self.events.emit(
            "rollout_started",
            session_id=session.id,
            service_id=session.service_id,
            version=session.version,
            dry_run=session.dry_run,
            stages=[stage.to_dict() for stage in session.stages],
        )
        try:
            if session.dry_run:
                return executor.dry_run(session)

            collector = BaselineCollector(self.metrics, session.config, clock=self.clock, events=self.events)
            try:
                baseline = collector.collect(session.service_id, token)
            except MetricsUnavailable as exc:
                reason = f"baseline unavailable: {exc}"
                session.transition(RolloutStatus.FAILED, reason=reason)
                self.events.emit("rollout_failed", session_id=session.id, service_id=session.service_id, reason=reason)
                return RolloutOutcome(OutcomeKind.FAILED, session.id, reason)
            session.set_baseline(baseline)
            return executor.run(session, token)
        finally:
            self._finish(session)

    def _finish(self, session: RolloutSession) -> None:
        if not session.terminal:
            session.transition(RolloutStatus.FAILED, reason=session.reason or "interrupted")
        if self.store is None:
            return
        self.store.save(session)
        self.store.save_report(session.id, build_report(session))
        self.store.clear_abort(session.id)

    def status(self, session_id: str) -> dict[str, object] | None:
        if self.store is None:
            return None
        return self.store.raw(session_id)
