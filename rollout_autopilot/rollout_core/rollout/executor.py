from __future__ import annotations

import threading
import time
from typing import Any

from rollout_core.clock import CancellationToken, Clock, SystemClock
from rollout_core.errors import MetricsUnavailable, RollbackFailed, RolloutError, TrafficShiftFailed
from rollout_core.events import EventLog
from rollout_core.integrations.base import MetricsSource, TrafficRouter
from rollout_core.types import (
    ROLLBACK_SOURCE,
    MetricSample,
    OutcomeKind,
    RolloutOutcome,
    RolloutStage,
    RolloutStatus,
)

from .baseline import read_metrics
from .calls import PendingCall, call_with_timeout, retry_call
from .health import HealthEvaluator, HealthThresholds
from .models import RolloutSession
from .store import SessionStore


CANCELLED_REASON = "cancelled"


class _Abort(Exception):
    def __init__(self, status: RolloutStatus, reason: str, *, cancelled: bool = False) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason
        self.cancelled = cancelled


class StageExecutor:
    """Drives one session through its stages on the calling thread.

    Blocking points (traffic shift, warm-up, metric reads, rollback) are all
    bounded. Cancellation is observed between steps and on every sampling
    iteration, never while a traffic shift is in flight.
    """

    def __init__(
        self,
        router: TrafficRouter,
        metrics: MetricsSource,
        evaluator: HealthEvaluator | None = None,
        *,
        clock: Clock | None = None,
        events: EventLog | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self.router = router
        self.metrics = metrics
        self.evaluator = evaluator
        self.clock = clock or SystemClock()
        self.events = events or EventLog()
        self.store = store
        self._abandoned: dict[str, list[PendingCall]] = {}
        self._abandoned_lock = threading.Lock()

    # -- bookkeeping -------------------------------------------------

    def _emit(self, session: RolloutSession, event: str, **payload: Any) -> None:
        self.events.emit(event, session_id=session.id, service_id=session.service_id, version=session.version, **payload)
        session.append_history(event, payload)

    def _save(self, session: RolloutSession) -> None:
        if self.store is not None:
            self.store.save(session)

    def _transition(self, session: RolloutSession, status: RolloutStatus, *, reason: str | None = None) -> None:
        session.transition(status, reason=reason)
        self._save(session)

    def _evaluator_for(self, session: RolloutSession) -> HealthEvaluator:
        if self.evaluator is not None:
            return self.evaluator
        return HealthEvaluator(HealthThresholds.from_config(session.config))

    @staticmethod
    def _check_cancel(cancel: CancellationToken) -> None:
        if not cancel.is_cancelled():
            return
        detail = cancel.reason or CANCELLED_REASON
        reason = CANCELLED_REASON if detail == CANCELLED_REASON else f"{CANCELLED_REASON}: {detail}"
        raise _Abort(RolloutStatus.ROLLED_BACK, reason, cancelled=True)

    # -- collaborator calls ------------------------------------------

    def _abandon(self, session: RolloutSession, pending: PendingCall) -> None:
        with self._abandoned_lock:
            self._abandoned.setdefault(session.id, []).append(pending)
        self._emit(session, "traffic_shift_abandoned", call=pending.name)

    def _settle_shifts(self, session: RolloutSession, timeout_sec: float) -> bool:
        """Wait for timed-out shifts to land; True when none is still running."""
        with self._abandoned_lock:
            pending = list(self._abandoned.get(session.id, ()))
        deadline = time.monotonic() + timeout_sec
        for call in pending:
            call.wait(deadline - time.monotonic())
        with self._abandoned_lock:
            left = [call for call in self._abandoned.get(session.id, ()) if not call.finished]
            if left:
                self._abandoned[session.id] = left
            else:
                self._abandoned.pop(session.id, None)
        return not left

    def _shift_once(self, session: RolloutSession, percent: int, timeout_sec: float) -> None:
        # Never run two shifts for one session at the same time.
        if not self._settle_shifts(session, timeout_sec):
            raise TrafficShiftFailed(f"An earlier traffic shift for {session.service_id} is still in flight")
        try:
            call_with_timeout(
                self.router.set_traffic_percentage,
                timeout_sec,
                session.service_id,
                percent,
                name="traffic-shift",
                on_abandon=lambda pending: self._abandon(session, pending),
            )
        except TrafficShiftFailed:
            raise
        except TimeoutError as exc:
            raise TrafficShiftFailed(f"Traffic shift to {percent}% timed out after {timeout_sec}s") from exc
        except Exception as exc:
            raise TrafficShiftFailed(f"Traffic shift to {percent}% failed: {exc!r}") from exc

    def _shift(self, session: RolloutSession, stage: RolloutStage) -> None:
        cfg = session.config

        def on_retry(attempt: int, exc: Exception) -> None:
            self._emit(session, "traffic_shift_retry", stage=stage.name, percent=stage.traffic_percent, attempt=attempt, error=str(exc))

        retry_call(
            lambda: self._shift_once(session, stage.traffic_percent, cfg.traffic_shift_timeout_sec),
            attempts=cfg.traffic_shift_attempts,
            retry_on=(TrafficShiftFailed,),
            clock=self.clock,
            on_retry=on_retry,
        )
        self._emit(session, "traffic_shifted", stage=stage.name, percent=stage.traffic_percent)

    def _sample(self, session: RolloutSession, stage: RolloutStage, cancel: CancellationToken) -> MetricSample:
        cfg = session.config

        def on_retry(attempt: int, exc: Exception) -> None:
            self._emit(session, "metrics_retry", stage=stage.name, attempt=attempt, error=str(exc))

        sample = retry_call(
            lambda: read_metrics(self.metrics, session.service_id, timeout_sec=cfg.metrics_timeout_sec),
            attempts=cfg.metrics_retries + 1,
            retry_on=(MetricsUnavailable,),
            clock=self.clock,
            backoff_sec=cfg.metrics_backoff_sec,
            cancel=cancel,
            on_retry=on_retry,
        )
        return sample.tagged(stage.name)

    # -- control loop ------------------------------------------------

    def run(self, session: RolloutSession, cancel: CancellationToken | None = None) -> RolloutOutcome:
        cancel = cancel or CancellationToken()
        if session.status is not RolloutStatus.INITIALIZING:
            raise RolloutError(f"Session {session.id} is {session.status.value}, expected initializing")
        if session.baseline is None:
            raise RolloutError(f"Session {session.id} has no baseline")

        self._transition(session, RolloutStatus.RUNNING)
        self._emit(session, "rollout_running", stages=[stage.name for stage in session.stages])
        try:
            for idx, stage in enumerate(session.stages):
                self._run_stage(session, idx, stage, cancel)
                if stage.terminal:
                    self._transition(session, RolloutStatus.COMPLETED)
                    self._emit(session, "rollout_completed", samples=len(session.samples))
                    return RolloutOutcome(OutcomeKind.COMPLETED, session.id)
                session.advance_to(idx + 1)
                self._emit(session, "stage_completed", stage=stage.name, next_stage=session.current_stage.name)
                self._save(session)
        except _Abort as abort:
            return self._abort(session, abort)
        except Exception as exc:
            return self._abort(session, _Abort(RolloutStatus.FAILED, f"unexpected error: {exc!r}"))
        raise RolloutError(f"Session {session.id} ran out of stages without reaching 100%")

    def _run_stage(self, session: RolloutSession, idx: int, stage: RolloutStage, cancel: CancellationToken) -> None:
        cfg = session.config
        self._check_cancel(cancel)
        self._emit(session, "stage_started", stage=stage.name, index=idx, percent=stage.traffic_percent, dwell_sec=stage.dwell_sec)
        try:
            self._shift(session, stage)
        except TrafficShiftFailed as exc:
            raise _Abort(RolloutStatus.FAILED, f"traffic shift failed at stage {stage.name}: {exc}") from exc

        self._check_cancel(cancel)
        self._emit(session, "warmup_started", stage=stage.name, warmup_sec=cfg.warmup_period_sec)
        if self.clock.sleep(cfg.warmup_period_sec, cancel):
            self._check_cancel(cancel)

        evaluator = self._evaluator_for(session)
        started = self.clock.now()
        while self.clock.now() - started < stage.dwell_sec:
            self._check_cancel(cancel)
            try:
                sample = self._sample(session, stage, cancel)
            except MetricsUnavailable as exc:
                self._check_cancel(cancel)
                raise _Abort(RolloutStatus.FAILED, f"metrics unavailable at stage {stage.name}: {exc}") from exc

            seq = session.append_sample(sample)
            verdict = evaluator.analyze(sample, session.baseline)
            failures = session.record_verdict(verdict)
            self._emit(
                session,
                "sample_evaluated",
                stage=stage.name,
                seq=seq,
                healthy=verdict.healthy,
                error_rate=sample.error_rate,
                response_time_ms=sample.response_time_ms,
                throughput=sample.throughput,
                consecutive_failures=failures,
            )
            if not verdict.healthy:
                self._emit(session, "health_check_failed", stage=stage.name, errors=list(verdict.errors), consecutive_failures=failures)
                if failures >= cfg.failure_threshold:
                    self._emit(session, "failure_threshold_reached", stage=stage.name, threshold=cfg.failure_threshold)
                    raise _Abort(
                        RolloutStatus.ROLLED_BACK,
                        f"{failures} consecutive unhealthy samples at stage {stage.name}: {'; '.join(verdict.errors)}",
                    )
            elif verdict.warnings:
                self._emit(session, "health_warning", stage=stage.name, warnings=list(verdict.warnings))
            self._save(session)

            # The last wait of a stage stops at the end of its dwell.
            remaining = stage.dwell_sec - (self.clock.now() - started)
            if remaining <= 0:
                break
            if self.clock.sleep(min(cfg.check_interval_sec, remaining), cancel):
                self._check_cancel(cancel)

    # -- abort / rollback --------------------------------------------

    def _abort(self, session: RolloutSession, abort: _Abort) -> RolloutOutcome:
        event = "rollout_cancelled" if abort.cancelled else "rollout_aborting"
        self._emit(session, event, reason=abort.reason, stage=session.current_stage.name)
        try:
            self.rollback(session)
        except RollbackFailed as exc:
            reason = f"{abort.reason}; rollback failed: {exc}"
            self._transition(session, RolloutStatus.FAILED, reason=reason)
            self._emit(session, "rollout_failed", reason=reason)
            raise RollbackFailed(reason, session_id=session.id) from exc

        self._transition(session, abort.status, reason=abort.reason)
        if abort.status is RolloutStatus.ROLLED_BACK:
            self._emit(session, "rollout_rolled_back", reason=abort.reason)
            return RolloutOutcome(OutcomeKind.ROLLED_BACK, session.id, abort.reason)
        self._emit(session, "rollout_failed", reason=abort.reason)
        return RolloutOutcome(OutcomeKind.FAILED, session.id, abort.reason)

    def rollback(self, session: RolloutSession) -> None:
        """Route all traffic away from the new version, then take a verification reading.

        A timed-out stage shift may still be running against the router. The
        0% call is only considered final once every such shift has landed;
        when one outlives the wait, 0% is routed again after it lands, or the
        rollback fails.
        """
        cfg = session.config
        self._emit(session, "rollback_started", attempts=cfg.rollback_attempts)

        settled = self._settle_shifts(session, cfg.rollback_timeout_sec)
        if not settled:
            self._emit(session, "rollback_shift_in_flight", wait_sec=cfg.rollback_timeout_sec)
        self._route_to_zero(session)
        if not settled:
            if not self._settle_shifts(session, cfg.rollback_timeout_sec):
                error = f"traffic shift for {session.service_id} still in flight after rollback"
                self._emit(session, "rollback_failed", error=error)
                raise RollbackFailed(error, session_id=session.id)
            self._route_to_zero(session)
        self._emit(session, "rollback_completed", percent=0)

        if cfg.rollback_verification_sec > 0:
            self.clock.sleep(cfg.rollback_verification_sec)
        try:
            sample = read_metrics(self.metrics, session.service_id, timeout_sec=cfg.metrics_timeout_sec)
        except MetricsUnavailable as exc:
            self._emit(session, "rollback_verification_skipped", error=str(exc))
            return
        session.append_sample(sample.tagged(ROLLBACK_SOURCE))
        self._emit(
            session,
            "rollback_verified",
            error_rate=sample.error_rate,
            response_time_ms=sample.response_time_ms,
            throughput=sample.throughput,
        )

    def _route_to_zero(self, session: RolloutSession) -> None:
        cfg = session.config

        def on_retry(attempt: int, exc: Exception) -> None:
            self._emit(session, "rollback_retry", attempt=attempt, error=str(exc))

        try:
            retry_call(
                lambda: call_with_timeout(
                    self.router.set_traffic_percentage,
                    cfg.rollback_timeout_sec,
                    session.service_id,
                    0,
                    name="rollback",
                ),
                attempts=cfg.rollback_attempts,
                retry_on=(Exception,),
                clock=self.clock,
                backoff_sec=1.0,
                on_retry=on_retry,
            )
        except Exception as exc:
            self._emit(session, "rollback_failed", error=str(exc))
            raise RollbackFailed(f"Rollback of {session.service_id} failed after {cfg.rollback_attempts} attempts: {exc}", session_id=session.id) from exc

    # -- dry run -----------------------------------------------------

    def dry_run(self, session: RolloutSession) -> RolloutOutcome:
        """Walk the plan without touching the router or the metrics source."""
        cfg = session.config
        self._transition(session, RolloutStatus.RUNNING)
        for idx, stage in enumerate(session.stages):
            self._emit(
                session,
                "dry_run_stage",
                stage=stage.name,
                percent=stage.traffic_percent,
                warmup_sec=cfg.warmup_period_sec,
                dwell_sec=stage.dwell_sec,
                check_interval_sec=cfg.check_interval_sec,
            )
            if not stage.terminal:
                session.advance_to(idx + 1)
        self._transition(session, RolloutStatus.COMPLETED, reason="dry run")
        self._emit(session, "rollout_completed", dry_run=True)
        return RolloutOutcome(OutcomeKind.COMPLETED, session.id, "dry run")
