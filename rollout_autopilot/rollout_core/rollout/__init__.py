from .baseline import BaselineCollector
from .controller import RolloutController
from .coordinator import RolloutCoordinator
from .executor import StageExecutor
from .health import HealthEvaluator, HealthThresholds
from .models import ALLOWED_TRANSITIONS, ROLLOUT_STATES, RolloutSession
from .report import build_report
from .store import SessionStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BaselineCollector",
    "HealthEvaluator",
    "HealthThresholds",
    "ROLLOUT_STATES",
    "RolloutController",
    "RolloutCoordinator",
    "RolloutSession",
    "SessionStore",
    "StageExecutor",
    "build_report",
]
