from .base import MetricsSource, TrafficRouter
from .http import HttpMetricsSource, HttpTrafficRouter
from .simulated import InMemoryTrafficRouter, SimulatedMetricsSource

__all__ = [
    "HttpMetricsSource",
    "HttpTrafficRouter",
    "InMemoryTrafficRouter",
    "MetricsSource",
    "SimulatedMetricsSource",
    "TrafficRouter",
]
