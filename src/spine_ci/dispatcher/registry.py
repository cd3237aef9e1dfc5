"""Runner registry: live runners keyed by ``host:port``.

Lock ordering: registry lock, then queue lock. The registry calls into the
queue while holding its own lock (so removal + requeue and the
"still registered?" check + assignment are each one critical section); the
queue never calls back into the registry.

Iteration uses snapshots: ``snapshot()`` copies the entries under the lock
and returns the list, so the dispatch engine and the health monitor can
iterate while handlers register or evict runners.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
import threading

from spine_ci.core.errors import MalformedRequestError
from spine_ci.dispatcher.models import DispatcherStats, Runner, RunnerStatus, utcnow
from spine_ci.dispatcher.queue import CommitQueue
from spine_ci.framework.logging import get_logger
from spine_ci.protocol.commands import Response

logger = get_logger(__name__)


def validate_address(host: str, port: int | str) -> tuple[str, int]:
    """Return ``(host, port)`` or raise for a malformed runner address."""
    host = (host or "").strip()
    if not host:
        raise MalformedRequestError("runner host is empty", reply=Response.INVALID_REGISTER)
    try:
        port_number = int(port)
    except (TypeError, ValueError):
        raise MalformedRequestError(f"runner port {port!r} is not a number", reply=Response.INVALID_REGISTER) from None
    if not 0 < port_number < 65536:
        raise MalformedRequestError(f"runner port {port_number} out of range", reply=Response.INVALID_REGISTER)
    return host, port_number


class RunnerRegistry:
    """Thread-safe mapping of runner identity to :class:`Runner`."""

    def __init__(self, queue: CommitQueue, stats: DispatcherStats | None = None) -> None:
        self._queue = queue
        self._stats = stats or DispatcherStats()
        self._lock = threading.RLock()
        self._runners: dict[str, Runner] = {}

    @property
    def queue(self) -> CommitQueue:
        return self._queue

    # ------------------------------------------------------------------ #
    # Membership
    # ------------------------------------------------------------------ #

    def register(self, host: str, port: int | str) -> Runner:
        """Add or replace a runner entry with status idle.

        A runner re-registering under the same address has restarted, so any
        commit still assigned to the old entry is requeued.

        Raises:
            MalformedRequestError: empty host or invalid port
        """
        host, port_number = validate_address(host, port)
        runner = Runner(host=host, port=port_number)
        with self._lock:
            replaced = runner.runner_id in self._runners
            self._runners[runner.runner_id] = runner
            requeued = self._queue.requeue_runner(runner.runner_id) if replaced else []
        self._stats.incr("registered")
        if requeued:
            self._stats.incr("requeued", len(requeued))
        logger.info("runner.registered", runner_id=runner.runner_id, replaced=replaced, requeued=requeued)
        return replace(runner)

    def remove(self, runner_id: str, reason: str = "") -> list[str]:
        """Remove a runner and requeue its assigned commit in one step.

        Returns the requeued commit ids (empty if the runner was idle or
        already gone).
        """
        with self._lock:
            runner = self._runners.pop(runner_id, None)
            if runner is None:
                return []
            requeued = self._queue.requeue_runner(runner_id)
        self._stats.incr("evicted")
        if requeued:
            self._stats.incr("requeued", len(requeued))
        logger.warning("runner.removed", runner_id=runner_id, reason=reason, requeued=requeued)
        return requeued

    def get(self, runner_id: str) -> Runner | None:
        with self._lock:
            runner = self._runners.get(runner_id)
            return replace(runner) if runner else None

    def snapshot(self) -> list[Runner]:
        """Copies of the current entries, in registration order."""
        with self._lock:
            return [replace(r) for r in self._runners.values()]

    def __iter__(self) -> Iterator[Runner]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._runners)

    def __contains__(self, runner_id: object) -> bool:
        with self._lock:
            return runner_id in self._runners

    # ------------------------------------------------------------------ #
    # Assignment and status
    # ------------------------------------------------------------------ #

    def assign(self, commit_id: str, runner_id: str) -> bool:
        """Mark ``commit_id`` dispatched to ``runner_id``.

        Fails when the runner is no longer registered, already holds a
        commit, or the commit is not pending.
        """
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is None:
                return False
            if self._queue.assigned_commit(runner_id) is not None:
                return False
            if not self._queue.mark_dispatched(commit_id, runner_id):
                return False
            runner.status = RunnerStatus.BUSY
            runner.last_seen = utcnow()
            return True

    def mark_busy(self, runner_id: str) -> None:
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is not None and runner.status is not RunnerStatus.UNREACHABLE:
                runner.status = RunnerStatus.BUSY
                runner.last_seen = utcnow()

    def mark_idle(self, runner_id: str) -> None:
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is not None and runner.status is not RunnerStatus.UNREACHABLE:
                runner.status = RunnerStatus.IDLE
                runner.last_seen = utcnow()

    def record_probe_success(self, runner_id: str) -> None:
        """Reset the failure count; a runner back from unreachable regains its status."""
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is None:
                return
            runner.probe_failures = 0
            runner.last_seen = utcnow()
            if runner.status is RunnerStatus.UNREACHABLE:
                busy = self._queue.assigned_commit(runner_id) is not None
                runner.status = RunnerStatus.BUSY if busy else RunnerStatus.IDLE
                logger.info("runner.reachable", runner_id=runner_id)

    def record_probe_failure(self, runner_id: str, *, hard: bool, max_failures: int) -> bool:
        """Count a failed probe. Returns True if the runner was evicted.

        A hard connection error evicts immediately; soft failures (timeout,
        wrong reply) evict after ``max_failures`` in a row.
        """
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is None:
                return False
            runner.probe_failures += 1
            runner.status = RunnerStatus.UNREACHABLE
            failures = runner.probe_failures
            if not hard and failures < max_failures:
                logger.info("runner.probe_failed", runner_id=runner_id, failures=failures)
                return False
            self.remove(runner_id, reason="connection error" if hard else f"{failures} failed probes")
            return True
