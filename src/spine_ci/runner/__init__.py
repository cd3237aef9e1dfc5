"""Runner agent and test execution actions."""

from spine_ci.runner.agent import RunnerAgent, RunnerState, RunnerStats
from spine_ci.runner.executor import CallableExecutor, ExecutionAction, ExecutionReport, GitExecutor

__all__ = [
    "CallableExecutor",
    "ExecutionAction",
    "ExecutionReport",
    "GitExecutor",
    "RunnerAgent",
    "RunnerState",
    "RunnerStats",
]
