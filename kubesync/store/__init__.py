"""State store interfaces and their implementations."""

from kubesync.store.base import DesiredStateSource, LiveFetch, LiveStateStore, MetricsSource
from kubesync.store.memory import InMemoryLiveStore, StaticDesiredSource, StaticMetricsSource

__all__ = [
    "DesiredStateSource",
    "InMemoryLiveStore",
    "LiveFetch",
    "LiveStateStore",
    "MetricsSource",
    "StaticDesiredSource",
    "StaticMetricsSource",
]
