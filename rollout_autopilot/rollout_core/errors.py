from __future__ import annotations


class RolloutError(Exception):
    """Base class for every error surfaced by the rollout controller."""


class InvalidRolloutPlan(RolloutError):
    pass


class InvalidTransition(RolloutError):
    pass


class MetricsUnavailable(RolloutError):
    """The metrics source could not produce a reading in time."""


class TrafficShiftFailed(RolloutError):
    """The traffic router rejected or timed out a percentage change."""


class RollbackFailed(RolloutError):
    """Every rollback attempt failed; traffic needs manual intervention."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id
