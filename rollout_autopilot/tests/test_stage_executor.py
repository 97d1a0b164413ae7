from __future__ import annotations

import time

import pytest

from rollout_core.clock import CancellationToken
from rollout_core.errors import RollbackFailed, RolloutError
from rollout_core.events import MemoryEventLog
from rollout_core.integrations import InMemoryTrafficRouter
from rollout_core.rollout import HealthEvaluator, RolloutSession, StageExecutor
from rollout_core.types import HealthVerdict, MetricSample, OutcomeKind, RolloutStage, RolloutStatus

from rollout_fakes import HEALTHY, UNHEALTHY, ManualClock, ScriptedMetrics, SlowRouter, fast_config, plan


def _session(**config_overrides: object) -> RolloutSession:
    session = RolloutSession.create(service_id="web", version="v2", stages=plan(), config=fast_config(**config_overrides))
    session.set_baseline(MetricSample(*HEALTHY))
    return session


def _percents(router: InMemoryTrafficRouter) -> list[int]:
    return [percent for _, percent in router.calls]


def test_healthy_rollout_walks_every_stage_in_order() -> None:
    router = InMemoryTrafficRouter()
    events = MemoryEventLog()
    session = _session()
    outcome = StageExecutor(router, ScriptedMetrics([HEALTHY]), clock=ManualClock(), events=events).run(session)

    assert outcome.kind is OutcomeKind.COMPLETED
    assert outcome.ok
    assert _percents(router) == [5, 10, 25, 50, 100]
    assert session.status is RolloutStatus.COMPLETED
    assert session.current_stage_index == 4
    # 120s dwell sampled every 30s: four readings per canary stage, none at 100%.
    assert len(session.samples) == 16
    assert [s.source for s in session.samples[:4]] == ["canary-1"] * 4
    assert events.events()[-1] == "rollout_completed"
    assert events.events().count("stage_completed") == 4


def test_consecutive_unhealthy_samples_roll_back_at_current_stage() -> None:
    router = InMemoryTrafficRouter()
    events = MemoryEventLog()
    session = _session()
    metrics = ScriptedMetrics([HEALTHY] * 8 + [UNHEALTHY])
    outcome = StageExecutor(router, metrics, clock=ManualClock(), events=events).run(session)

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert "3 consecutive unhealthy samples at stage canary-3" in (outcome.reason or "")
    assert _percents(router) == [5, 10, 25, 0]
    assert max(_percents(router)) <= 25
    assert _percents(router).count(0) == 1
    assert session.status is RolloutStatus.ROLLED_BACK
    assert session.current_stage.name == "canary-3"
    assert session.samples[-1].source == "rollback"
    names = events.events()
    assert names.index("failure_threshold_reached") < names.index("rollback_completed") < names.index("rollout_rolled_back")
    assert "rollback_verified" in names


def test_healthy_sample_resets_failure_counter() -> None:
    router = InMemoryTrafficRouter()
    pattern = [UNHEALTHY, UNHEALTHY, HEALTHY] * 6
    outcome = StageExecutor(router, ScriptedMetrics(pattern), clock=ManualClock(), events=MemoryEventLog()).run(_session())
    assert outcome.kind is OutcomeKind.COMPLETED
    assert 0 not in _percents(router)


def test_warnings_do_not_count_as_failures() -> None:
    warn_only = (0.03, 1000.0, 1000.0)
    events = MemoryEventLog()
    outcome = StageExecutor(InMemoryTrafficRouter(), ScriptedMetrics([warn_only]), clock=ManualClock(), events=events).run(_session())
    assert outcome.kind is OutcomeKind.COMPLETED
    assert events.events().count("health_warning") == 16


def test_cancellation_between_samples_rolls_back() -> None:
    router = InMemoryTrafficRouter()
    clock = ManualClock()
    token = CancellationToken()
    clock.on_sleep = lambda c: token.cancel("operator") if c.t >= 150 else None
    events = MemoryEventLog()
    session = _session()
    outcome = StageExecutor(router, ScriptedMetrics([HEALTHY]), clock=clock, events=events).run(session, token)

    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.reason == "cancelled: operator"
    assert session.reason == "cancelled: operator"
    assert _percents(router) == [5, 10, 0]
    assert token.reason == "operator"
    assert "rollout_cancelled" in events.events()


def test_cancelled_before_start_still_rolls_back() -> None:
    router = InMemoryTrafficRouter()
    token = CancellationToken()
    token.cancel()
    outcome = StageExecutor(router, ScriptedMetrics([HEALTHY]), clock=ManualClock(), events=MemoryEventLog()).run(_session(), token)
    assert outcome.kind is OutcomeKind.ROLLED_BACK
    assert outcome.reason == "cancelled"
    assert _percents(router) == [0]


def test_traffic_shift_failure_is_retried_then_fails_the_rollout() -> None:
    router = InMemoryTrafficRouter(reject={25})
    events = MemoryEventLog()
    session = _session()
    outcome = StageExecutor(router, ScriptedMetrics([HEALTHY]), clock=ManualClock(), events=events).run(session)

    assert outcome.kind is OutcomeKind.FAILED
    assert (outcome.reason or "").startswith("traffic shift failed at stage canary-3")
    assert _percents(router) == [5, 10, 25, 25, 0]
    assert session.status is RolloutStatus.FAILED
    assert "traffic_shift_retry" in events.events()


def test_metrics_outage_fails_after_retries() -> None:
    router = InMemoryTrafficRouter()
    metrics = ScriptedMetrics([HEALTHY, HEALTHY, None])
    events = MemoryEventLog()
    outcome = StageExecutor(router, metrics, clock=ManualClock(), events=events).run(_session(metrics_retries=1))

    assert outcome.kind is OutcomeKind.FAILED
    assert (outcome.reason or "").startswith("metrics unavailable at stage canary-1")
    assert _percents(router) == [5, 0]
    assert events.events().count("metrics_retry") == 1
    assert "rollback_verification_skipped" in events.events()


def test_failed_rollback_raises_and_marks_session_failed() -> None:
    router = InMemoryTrafficRouter(reject={0})
    session = _session()
    with pytest.raises(RollbackFailed) as exc:
        StageExecutor(router, ScriptedMetrics([UNHEALTHY]), clock=ManualClock(), events=MemoryEventLog()).run(session)

    assert exc.value.session_id == session.id
    assert session.status is RolloutStatus.FAILED
    assert "rollback failed" in (session.reason or "")
    assert _percents(router) == [5, 0, 0, 0]


def test_unexpected_error_fails_after_rollback() -> None:
    class ExplodingEvaluator(HealthEvaluator):
        def analyze(self, sample: MetricSample, baseline: MetricSample | None) -> HealthVerdict:
            raise ZeroDivisionError("bad math")

    router = InMemoryTrafficRouter()
    session = _session()
    outcome = StageExecutor(router, ScriptedMetrics([HEALTHY]), ExplodingEvaluator(), clock=ManualClock(), events=MemoryEventLog()).run(session)
    assert outcome.kind is OutcomeKind.FAILED
    assert "unexpected error" in (outcome.reason or "")
    assert _percents(router) == [5, 0]


def test_run_requires_fresh_session_with_baseline() -> None:
    executor = StageExecutor(InMemoryTrafficRouter(), ScriptedMetrics([HEALTHY]), clock=ManualClock(), events=MemoryEventLog())
    no_baseline = RolloutSession.create(service_id="web", version="v2", stages=plan(), config=fast_config())
    with pytest.raises(RolloutError):
        executor.run(no_baseline)

    session = _session()
    executor.run(session)
    with pytest.raises(RolloutError):
        executor.run(session)


def test_dry_run_touches_no_collaborator() -> None:
    router = InMemoryTrafficRouter()
    metrics = ScriptedMetrics([HEALTHY])
    events = MemoryEventLog()
    session = RolloutSession.create(service_id="web", version="v2", stages=plan(), config=fast_config(), dry_run=True)
    outcome = StageExecutor(router, metrics, clock=ManualClock(), events=events).dry_run(session)

    assert outcome.kind is OutcomeKind.COMPLETED
    assert outcome.reason == "dry run"
    assert router.calls == []
    assert metrics.calls == 0
    assert events.events().count("dry_run_stage") == 5


def test_timed_out_shift_cannot_land_after_rollback() -> None:
    router = SlowRouter({25: 0.4})
    events = MemoryEventLog()
    session = _session(traffic_shift_timeout_sec=0.1, traffic_shift_attempts=1, rollback_timeout_sec=2)
    outcome = StageExecutor(router, ScriptedMetrics([HEALTHY]), clock=ManualClock(), events=events).run(session)

    assert outcome.kind is OutcomeKind.FAILED
    assert (outcome.reason or "").startswith("traffic shift failed at stage canary-3")
    assert "traffic_shift_abandoned" in events.events()
    assert router.percentage("web") == 0
    time.sleep(0.6)
    assert router.percentage("web") == 0
    assert _percents(router) == [5, 10, 25, 0]


def test_shift_retry_never_overlaps_a_running_shift() -> None:
    router = SlowRouter({25: 0.5})
    session = _session(traffic_shift_timeout_sec=0.1, traffic_shift_attempts=2, rollback_timeout_sec=2)
    outcome = StageExecutor(router, ScriptedMetrics([HEALTHY]), clock=ManualClock(), events=MemoryEventLog()).run(session)

    assert outcome.kind is OutcomeKind.FAILED
    assert "still in flight" in (outcome.reason or "")
    assert _percents(router).count(25) == 1
    assert router.percentage("web") == 0


def test_rollback_timing_out_on_every_attempt_raises() -> None:
    router = SlowRouter({0: 0.5})
    events = MemoryEventLog()
    session = _session(rollback_timeout_sec=0.05, rollback_attempts=2)
    with pytest.raises(RollbackFailed):
        StageExecutor(router, ScriptedMetrics([UNHEALTHY]), clock=ManualClock(), events=events).run(session)

    assert session.status is RolloutStatus.FAILED
    assert events.events().count("rollback_retry") == 1
    assert "rollback_failed" in events.events()
    # Traffic is still on the first canary; the operator has to intervene.
    assert router.percentage("web") == 5


def test_rollback_fails_when_shift_outlives_the_wait() -> None:
    router = SlowRouter({25: 0.8})
    session = _session(traffic_shift_timeout_sec=0.05, traffic_shift_attempts=1, rollback_timeout_sec=0.1)
    with pytest.raises(RollbackFailed) as exc:
        StageExecutor(router, ScriptedMetrics([HEALTHY]), clock=ManualClock(), events=MemoryEventLog()).run(session)

    assert "still in flight" in str(exc.value)
    assert session.status is RolloutStatus.FAILED


def test_last_wait_of_a_stage_stops_at_dwell() -> None:
    clock = ManualClock()
    stages = [RolloutStage("canary", 10, 45), RolloutStage("full", 100, 0)]
    session = RolloutSession.create(service_id="web", version="v2", stages=stages, config=fast_config())
    session.set_baseline(MetricSample(*HEALTHY))
    outcome = StageExecutor(InMemoryTrafficRouter(), ScriptedMetrics([HEALTHY]), clock=clock, events=MemoryEventLog()).run(session)

    assert outcome.kind is OutcomeKind.COMPLETED
    assert clock.sleeps == [0, 30, 15, 0]
    assert clock.t == 45
    assert len(session.samples) == 2
