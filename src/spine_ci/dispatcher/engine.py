"""Dispatch engine: finds a runner for each pending commit.

A dispatch attempt for commit ``c`` owns the in-flight marker for ``c`` for
its whole lifetime and runs in its own thread::

    begin_attempt(c) ──▶ pass over runners ──accepted──▶ end_attempt(c)
                              │
                         none accepted
                              │
                      wait backoff, retry   (until c is no longer pending
                                             or the engine is stopped)

Within a pass, runners are tried in registration order. Unreachable runners
and runners that already hold an assignment are skipped. ``OK`` is turned
into an assignment through :meth:`RunnerRegistry.assign`; ``BUSY`` marks the
runner busy; timeouts, refusals and unexpected replies move on to the next
runner.

The redistributor calls :meth:`DispatchEngine.redistribute` periodically and
starts an attempt for every pending commit that has none.
"""

from __future__ import annotations

import threading

from spine_ci.core.errors import TransientError
from spine_ci.core.retry import ConstantBackoff, RetryContext
from spine_ci.dispatcher.models import DispatcherStats, RunnerStatus
from spine_ci.dispatcher.queue import CommitQueue
from spine_ci.dispatcher.registry import RunnerRegistry
from spine_ci.framework.logging import get_logger, push_context
from spine_ci.protocol.client import send_request
from spine_ci.protocol.commands import Command, Response, format_request

logger = get_logger(__name__)


class _PassExhausted(TransientError):
    """No runner accepted the commit during a full pass."""


class DispatchEngine:
    """Starts and tracks dispatch attempts.

    Args:
        registry: Runner registry (its queue is the engine's queue)
        backoff: Seconds between two passes that found no runner
        request_timeout: Timeout for each ``RUNTEST`` round-trip
        stats: Shared dispatcher counters
    """

    def __init__(
        self,
        registry: RunnerRegistry,
        *,
        backoff: float = 2.0,
        request_timeout: float = 5.0,
        stats: DispatcherStats | None = None,
    ) -> None:
        self._registry = registry
        self._queue: CommitQueue = registry.queue
        self._backoff = backoff
        self._request_timeout = request_timeout
        self._stats = stats or DispatcherStats()
        self._stop = threading.Event()
        self._threads: set[threading.Thread] = set()
        self._threads_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def dispatch(self, commit_id: str) -> bool:
        """Start an attempt for ``commit_id`` in a background thread.

        Returns False when the engine is stopped, the commit is not pending,
        or another attempt already owns it.
        """
        if self._stop.is_set():
            return False
        if not self._queue.begin_attempt(commit_id):
            return False

        thread = threading.Thread(
            target=self._run_attempt,
            args=(commit_id,),
            daemon=True,
            name=f"spine-ci-dispatch-{commit_id[:12]}",
        )
        with self._threads_lock:
            self._threads.add(thread)
        try:
            thread.start()
        except RuntimeError:
            with self._threads_lock:
                self._threads.discard(thread)
            self._queue.end_attempt(commit_id)
            raise
        return True

    def redistribute(self) -> int:
        """Start an attempt for every pending commit without one. Returns the count started."""
        in_flight = self._queue.in_flight()
        started = 0
        for commit_id in self._queue.pending():
            if commit_id in in_flight:
                continue
            if self.dispatch(commit_id):
                started += 1
        if started:
            logger.debug("redistribute.started", attempts=started)
        return started

    def stop(self, timeout: float = 5.0) -> None:
        """Interrupt backoff waits and join the attempt threads."""
        self._stop.set()
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=timeout)

    @property
    def active_attempts(self) -> int:
        with self._threads_lock:
            return len(self._threads)

    # ------------------------------------------------------------------ #
    # Attempt loop
    # ------------------------------------------------------------------ #

    def _run_attempt(self, commit_id: str) -> None:
        token = push_context(component="dispatcher", commit_id=commit_id)
        retry = RetryContext(
            ConstantBackoff(delay=self._backoff, max_retries=None),
            on_retry=self._on_retry,
            wait=self._stop.wait,
        )
        try:
            runner_id = retry.run(self._pass, commit_id)
            if runner_id is None:
                logger.debug("dispatch.abandoned", commit_id=commit_id, passes=retry.attempt)
        except _PassExhausted:
            logger.info("dispatch.stopped", commit_id=commit_id, passes=retry.attempt)
        except Exception:
            logger.exception("dispatch.attempt_failed", commit_id=commit_id)
        finally:
            self._queue.end_attempt(commit_id)
            with self._threads_lock:
                self._threads.discard(threading.current_thread())
            token.restore()

    def _on_retry(self, attempt: int, error: Exception, delay: float) -> None:
        logger.debug("dispatch.no_runner_available", passes=attempt, retry_in=delay)

    def _pass(self, commit_id: str) -> str | None:
        """One pass over the runners.

        Returns the runner id that took the commit, or None when the commit
        stopped being pending (completed elsewhere or unknown).

        Raises:
            _PassExhausted: no runner accepted the commit
        """
        if not self._queue.is_pending(commit_id):
            return None
        self._queue.record_pass(commit_id)

        for runner in self._registry.snapshot():
            if not self._queue.is_pending(commit_id):
                return None
            if runner.status is RunnerStatus.UNREACHABLE:
                continue
            if self._queue.assigned_commit(runner.runner_id) is not None:
                continue

            try:
                reply = send_request(
                    runner.host,
                    runner.port,
                    format_request(Command.RUNTEST, commit_id),
                    timeout=self._request_timeout,
                )
            except TransientError as e:
                logger.debug("dispatch.runner_unavailable", runner_id=runner.runner_id, error=e.message)
                continue

            if reply == Response.OK:
                if self._registry.assign(commit_id, runner.runner_id):
                    self._stats.incr("dispatched")
                    logger.info("commit.dispatched", commit_id=commit_id, runner_id=runner.runner_id)
                    return runner.runner_id
                # Runner evicted or handed another commit since it replied
                logger.warning("dispatch.assign_rejected", commit_id=commit_id, runner_id=runner.runner_id)
                if not self._queue.is_pending(commit_id):
                    return None
                continue

            if reply == Response.BUSY:
                self._registry.mark_busy(runner.runner_id)
                continue

            logger.warning("dispatch.unexpected_reply", runner_id=runner.runner_id, reply=reply[:80])

        if not self._queue.is_pending(commit_id):
            return None
        raise _PassExhausted(f"no runner accepted {commit_id}").with_context(commit_id=commit_id)
