"""Dispatcher: runner registry, commit queue, dispatch engine and health monitor."""

from spine_ci.dispatcher.engine import DispatchEngine
from spine_ci.dispatcher.health import HealthMonitor, ProbeOutcome
from spine_ci.dispatcher.models import CommitRecord, CommitState, DispatcherStats, Runner, RunnerStatus
from spine_ci.dispatcher.queue import CommitQueue
from spine_ci.dispatcher.registry import RunnerRegistry
from spine_ci.dispatcher.service import DispatcherService

__all__ = [
    "CommitQueue",
    "CommitRecord",
    "CommitState",
    "DispatchEngine",
    "DispatcherService",
    "DispatcherStats",
    "HealthMonitor",
    "ProbeOutcome",
    "Runner",
    "RunnerRegistry",
    "RunnerStatus",
]
