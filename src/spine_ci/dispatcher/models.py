"""Dispatcher data model: runners, commits and counters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def runner_key(host: str, port: int) -> str:
    """Registry identity of a runner: its listening address."""
    return f"{host}:{port}"


class RunnerStatus(str, Enum):
    """Runner status as seen by the dispatcher."""

    IDLE = "idle"
    BUSY = "busy"
    UNREACHABLE = "unreachable"


class CommitState(str, Enum):
    """Commit lifecycle: pending → dispatched → completed (dispatched → pending on requeue)."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"


@dataclass
class Runner:
    """A registered runner."""

    host: str
    port: int
    status: RunnerStatus = RunnerStatus.IDLE
    probe_failures: int = 0
    registered_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)

    @property
    def runner_id(self) -> str:
        return runner_key(self.host, self.port)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runner_id": self.runner_id,
            "host": self.host,
            "port": self.port,
            "status": self.status.value,
            "probe_failures": self.probe_failures,
            "registered_at": self.registered_at.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass
class CommitRecord:
    """A commit known to the dispatcher."""

    commit_id: str
    state: CommitState = CommitState.PENDING
    runner_id: str | None = None
    attempts: int = 0
    requeues: int = 0
    submitted_at: datetime = field(default_factory=utcnow)
    dispatched_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_id": self.commit_id,
            "state": self.state.value,
            "runner_id": self.runner_id,
            "attempts": self.attempts,
            "requeues": self.requeues,
            "submitted_at": self.submitted_at.isoformat(),
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class DispatcherStats:
    """Thread-safe counters for the dispatcher process."""

    submitted: int = 0
    duplicates: int = 0
    dispatched: int = 0
    completed: int = 0
    requeued: int = 0
    registered: int = 0
    evicted: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def to_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "submitted": self.submitted,
                "duplicates": self.duplicates,
                "dispatched": self.dispatched,
                "completed": self.completed,
                "requeued": self.requeued,
                "registered": self.registered,
                "evicted": self.evicted,
            }
