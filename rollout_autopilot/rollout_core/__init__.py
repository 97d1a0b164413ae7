"""Core package for the Rollout Autopilot progressive-delivery controller."""

from .config import ControllerSettings, RolloutConfig, load_settings

__all__ = ["ControllerSettings", "RolloutConfig", "load_settings"]
