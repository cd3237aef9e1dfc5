"""Commit queue — the dispatcher's record of every commit and its assignment.

State machine per commit::

    pending ──assign──▶ dispatched ──results──▶ completed
       ▲                    │
       └──── requeue ───────┘   (runner evicted or refused)

Invariants held under the queue lock:

- a commit has at most one assigned runner;
- ``_assignments`` has an entry exactly for the commits in ``dispatched``;
- completed commits never go back to pending.

The in-flight set records commits that have an active dispatch attempt, so
the redistributor and an on-demand dispatch from ``submit`` never retry the
same commit concurrently.

The lock protects in-memory state only; no method performs I/O.
"""

from __future__ import annotations

import threading
from dataclasses import replace

from spine_ci.core.storage import validate_commit_id
from spine_ci.dispatcher.models import CommitRecord, CommitState, utcnow
from spine_ci.framework.logging import get_logger

logger = get_logger(__name__)


class CommitQueue:
    """Thread-safe commit store with per-commit in-flight markers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._commits: dict[str, CommitRecord] = {}
        self._assignments: dict[str, str] = {}
        self._in_flight: set[str] = set()

    # ------------------------------------------------------------------ #
    # Submission and lookup
    # ------------------------------------------------------------------ #

    def submit(self, commit_id: str) -> bool:
        """Insert a pending commit. Returns False if the id is already known.

        Raises:
            MalformedRequestError: empty or unusable commit id
        """
        validate_commit_id(commit_id)
        with self._lock:
            if commit_id in self._commits:
                return False
            self._commits[commit_id] = CommitRecord(commit_id=commit_id)
        logger.info("commit.submitted", commit_id=commit_id)
        return True

    def get(self, commit_id: str) -> CommitRecord | None:
        """Return a copy of the commit record."""
        with self._lock:
            record = self._commits.get(commit_id)
            return replace(record) if record else None

    def state(self, commit_id: str) -> CommitState | None:
        with self._lock:
            record = self._commits.get(commit_id)
            return record.state if record else None

    def is_pending(self, commit_id: str) -> bool:
        return self.state(commit_id) is CommitState.PENDING

    def pending(self) -> list[str]:
        """Pending commit ids in submission order."""
        with self._lock:
            return [c for c, r in self._commits.items() if r.state is CommitState.PENDING]

    def records(self) -> list[CommitRecord]:
        with self._lock:
            return [replace(r) for r in self._commits.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._commits)

    def __contains__(self, commit_id: object) -> bool:
        with self._lock:
            return commit_id in self._commits

    # ------------------------------------------------------------------ #
    # In-flight markers
    # ------------------------------------------------------------------ #

    def begin_attempt(self, commit_id: str) -> bool:
        """Claim the in-flight marker for a pending commit.

        Returns False when the commit is not pending or another attempt
        already holds the marker.
        """
        with self._lock:
            record = self._commits.get(commit_id)
            if record is None or record.state is not CommitState.PENDING:
                return False
            if commit_id in self._in_flight:
                return False
            self._in_flight.add(commit_id)
            return True

    def end_attempt(self, commit_id: str) -> None:
        with self._lock:
            self._in_flight.discard(commit_id)

    def in_flight(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._in_flight)

    def is_in_flight(self, commit_id: str) -> bool:
        with self._lock:
            return commit_id in self._in_flight

    def record_pass(self, commit_id: str) -> int:
        """Count one dispatch pass for a commit; returns the new total."""
        with self._lock:
            record = self._commits.get(commit_id)
            if record is None:
                return 0
            record.attempts += 1
            return record.attempts

    # ------------------------------------------------------------------ #
    # Assignment
    # ------------------------------------------------------------------ #

    def mark_dispatched(self, commit_id: str, runner_id: str) -> bool:
        """Pending → dispatched to ``runner_id``. The only path into dispatched.

        Callers go through :meth:`RunnerRegistry.assign`, which checks the
        runner is still registered in the same critical section.
        """
        with self._lock:
            record = self._commits.get(commit_id)
            if record is None or record.state is not CommitState.PENDING:
                return False
            record.state = CommitState.DISPATCHED
            record.runner_id = runner_id
            record.dispatched_at = utcnow()
            self._assignments[commit_id] = runner_id
        return True

    def assignment(self, commit_id: str) -> str | None:
        with self._lock:
            return self._assignments.get(commit_id)

    def assigned_commit(self, runner_id: str) -> str | None:
        """The commit currently dispatched to ``runner_id``, if any."""
        with self._lock:
            for commit_id, assigned in self._assignments.items():
                if assigned == runner_id:
                    return commit_id
            return None

    def assignments(self) -> dict[str, str]:
        with self._lock:
            return dict(self._assignments)

    def requeue(self, commit_id: str) -> bool:
        """Dispatched → pending. Returns False for any other state."""
        with self._lock:
            return self._requeue_locked(commit_id)

    def requeue_runner(self, runner_id: str) -> list[str]:
        """Hand every commit dispatched to ``runner_id`` back as pending."""
        with self._lock:
            commits = [c for c, r in self._assignments.items() if r == runner_id]
            for commit_id in commits:
                self._requeue_locked(commit_id)
        for commit_id in commits:
            logger.info("commit.requeued", commit_id=commit_id, runner_id=runner_id)
        return commits

    def _requeue_locked(self, commit_id: str) -> bool:
        record = self._commits.get(commit_id)
        if record is None or record.state is not CommitState.DISPATCHED:
            return False
        self._assignments.pop(commit_id, None)
        record.state = CommitState.PENDING
        record.runner_id = None
        record.dispatched_at = None
        record.requeues += 1
        return True

    # ------------------------------------------------------------------ #
    # Completion
    # ------------------------------------------------------------------ #

    def complete(self, commit_id: str) -> tuple[bool, str | None]:
        """Move a commit to completed and clear its assignment.

        Unknown commits are recorded as completed. Returns
        ``(newly_completed, previous_runner_id)``; an already completed
        commit gives ``(False, None)``.
        """
        with self._lock:
            record = self._commits.get(commit_id)
            if record is None:
                record = CommitRecord(commit_id=commit_id)
                self._commits[commit_id] = record
            if record.state is CommitState.COMPLETED:
                return False, None
            previous = self._assignments.pop(commit_id, None)
            record.state = CommitState.COMPLETED
            record.runner_id = previous
            record.completed_at = utcnow()
            return True, previous

    def counts(self) -> dict[str, int]:
        with self._lock:
            result = {state.value: 0 for state in CommitState}
            for record in self._commits.values():
                result[record.state.value] += 1
            result["in_flight"] = len(self._in_flight)
            return result
