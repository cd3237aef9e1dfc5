"""Runner agent: accepts one commit at a time from the dispatcher and reports back.

States::

    unregistered ──register OK──▶ idle ──RUNTEST──▶ busy ──done──▶ idle
          │                        │                                │
     rejected / unreachable        └──── dispatcher lost / signal ──┴──▶ stopped
          ▼
     RegistrationError (fatal)

``RUNTEST`` is answered immediately: ``OK`` when the agent was idle (the
commit then runs on the agent's single execution thread), ``BUSY`` when it
was not. After the tests finish the agent goes back to idle and pushes the
report to the dispatcher with ``RESULTS``, retrying with exponential backoff
while the dispatcher is unreachable. A report that is never delivered is
followed by a fresh ``REGISTER``, which makes the dispatcher requeue the
commit it still holds against this runner.

Every ``dispatcher_check_interval`` seconds the agent checks that the
dispatcher still exists: if nothing has contacted the agent for
``dispatcher_timeout`` seconds and a ``STATUS`` request fails or is not
answered with ``OK``, it shuts down.

Usage (programmatic)::

    from spine_ci.core.settings import RunnerSettings
    from spine_ci.runner import CallableExecutor, RunnerAgent

    agent = RunnerAgent(
        RunnerSettings(dispatcher="localhost:8888"),
        executor=CallableExecutor(lambda commit: f"ran {commit}"),
    )
    agent.start()        # binds, registers; raises BindError / RegistrationError
    ...
    agent.stop()

Usage (CLI)::

    spine-ci runner --dispatcher localhost:8888 --repo /path/to/clone
"""

from __future__ import annotations

import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from spine_ci.core.errors import (
    MalformedRequestError,
    RegistrationError,
    SpineCIError,
    TransientError,
)
from spine_ci.core.retry import ExponentialBackoff, RetryContext
from spine_ci.core.scheduling import PeriodicTask
from spine_ci.core.settings import RunnerSettings
from spine_ci.framework.logging import get_logger, log_step, push_context
from spine_ci.protocol.client import send_request
from spine_ci.protocol.commands import Command, Request, Response, format_request, format_results
from spine_ci.protocol.server import ProtocolServer, bind_first_free
from spine_ci.runner.executor import ExecutionAction, ExecutionReport, GitExecutor

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RunnerState(str, Enum):
    UNREGISTERED = "unregistered"
    IDLE = "idle"
    BUSY = "busy"
    STOPPED = "stopped"


@dataclass
class RunnerStats:
    """Counters for one runner process."""

    accepted: int = 0
    rejected_busy: int = 0
    passed: int = 0
    failed: int = 0
    results_delivered: int = 0
    results_lost: int = 0
    started_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "rejected_busy": self.rejected_busy,
            "passed": self.passed,
            "failed": self.failed,
            "results_delivered": self.results_delivered,
            "results_lost": self.results_lost,
            "uptime_seconds": (_utcnow() - self.started_at).total_seconds(),
        }


class _ResultsRejected(SpineCIError):
    """The dispatcher refused a results message; resending will not help."""


class RunnerAgent:
    """A test runner serving the dispatcher's ``RUNTEST`` and ``PING`` requests."""

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        executor: ExecutionAction | None = None,
    ) -> None:
        self.settings = settings or RunnerSettings()
        self.executor: ExecutionAction = executor or GitExecutor(
            self.settings.repo_path,
            self.settings.test_command,
            timeout=self.settings.execution_timeout,
        )
        self.stats = RunnerStats()

        self._state = RunnerState.UNREGISTERED
        self._state_lock = threading.Lock()
        self._current_commit: str | None = None
        self._last_contact = time.monotonic()

        self._server: ProtocolServer | None = None
        self._exec_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="spine-ci-exec")
        self._checker = PeriodicTask(
            "dispatcher-check", self.check_dispatcher, self.settings.dispatcher_check_interval
        )
        self._shutdown = threading.Event()
        self._reannounce_needed = threading.Event()
        self._reannounce_lock = threading.Lock()
        self.dispatcher_lost = False

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> RunnerState:
        with self._state_lock:
            return self._state

    @property
    def current_commit(self) -> str | None:
        with self._state_lock:
            return self._current_commit

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None:
            return self.settings.host, self.settings.port
        return self._server.address

    @property
    def runner_id(self) -> str:
        return "%s:%d" % self.address

    @property
    def reannounce_pending(self) -> bool:
        """True while a lost report still has to be followed by a fresh ``REGISTER``."""
        return self._reannounce_needed.is_set()

    @property
    def stopped(self) -> threading.Event:
        """Set once the agent has begun shutting down."""
        return self._shutdown

    def get_stats(self) -> dict[str, Any]:
        return {
            "runner_id": self.runner_id,
            "state": self.state.value,
            "current_commit": self.current_commit,
            "dispatcher": self.settings.dispatcher,
            **self.stats.to_dict(),
        }

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def bind(self) -> tuple[str, int]:
        """Bind the listening socket, on the configured port or the first free one in range.

        Raises:
            BindError: no usable port
        """
        if self._server is not None:
            return self._server.address
        if self.settings.port:
            server = ProtocolServer(
                self.settings.host,
                self.settings.port,
                self.handle,
                component="runner",
                request_timeout=self.settings.read_timeout,
            )
            server.bind()
        else:
            low, high = self.settings.port_range
            server = bind_first_free(
                self.settings.host,
                range(low, high + 1),
                self.handle,
                component="runner",
                request_timeout=self.settings.read_timeout,
            )
        self._server = server
        return server.address

    def register(self) -> None:
        """Announce this runner's address to the dispatcher. No retry.

        Raises:
            RegistrationError: dispatcher unreachable or rejected the request
        """
        host, port = self.address
        dispatcher_host, dispatcher_port = self.settings.dispatcher_address
        # The dispatcher may send RUNTEST before its OK reaches us
        with self._state_lock:
            self._state = RunnerState.IDLE
        try:
            reply = send_request(
                dispatcher_host,
                dispatcher_port,
                format_request(Command.REGISTER, host, port),
                timeout=self.settings.request_timeout,
            )
        except TransientError as e:
            self._set_unregistered()
            raise RegistrationError(
                f"dispatcher {self.settings.dispatcher} unreachable: {e.message}", cause=e
            ).with_context(runner_id=self.runner_id) from e
        if reply != Response.OK:
            self._set_unregistered()
            raise RegistrationError(f"dispatcher rejected registration: {reply!r}").with_context(
                runner_id=self.runner_id
            )
        self._touch()
        logger.info("runner.registered", runner_id=self.runner_id, dispatcher=self.settings.dispatcher)

    def _set_unregistered(self) -> None:
        with self._state_lock:
            self._state = RunnerState.UNREGISTERED
            self._current_commit = None

    def start(self) -> tuple[str, int]:
        """Bind, serve in the background, register and start the dispatcher check.

        Raises:
            BindError: no usable port
            RegistrationError: registration failed (the server is stopped again)
        """
        self.bind()
        self._server.start()
        try:
            self.register()
        except RegistrationError:
            self._server.stop()
            with self._state_lock:
                self._state = RunnerState.STOPPED
            raise
        self._checker.start()
        return self.address

    def serve_forever(self) -> None:
        """Block until the dispatcher is lost, a signal arrives or :meth:`stop` is called.

        Starts the agent first unless :meth:`start` was already called.
        """
        if self.state is RunnerState.UNREGISTERED:
            self.start()
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except (ValueError, OSError):
            pass  # Not in main thread
        try:
            self._shutdown.wait()
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop serving. A running test is not interrupted, but its results are not retried."""
        # STOPPED before the event, so a waiter on ``stopped`` never sees an earlier state
        with self._state_lock:
            already_stopped = self._state is RunnerState.STOPPED
            self._state = RunnerState.STOPPED
        self._shutdown.set()
        self._checker.stop()
        if self._server is not None:
            self._server.stop()
        self._exec_pool.shutdown(wait=False)
        if not already_stopped:
            logger.info("runner.stopped", **self.stats.to_dict())

    def _handle_signal(self, signum, frame):
        logger.info("runner.signal_received", signal=signum)
        self._shutdown.set()

    # ------------------------------------------------------------------ #
    # Request handling
    # ------------------------------------------------------------------ #

    def handle(self, request: Request) -> str:
        """Route one request from the dispatcher."""
        self._touch()
        if request.command in (Command.PING, Command.STATUS):
            return Response.PONG
        if request.command is Command.RUNTEST:
            return self.accept(request.arg(0, Response.INVALID_RUNTEST))
        raise MalformedRequestError(f"{request.command.value} is not accepted by a runner").with_context(
            command=request.command.value
        )

    def accept(self, commit_id: str) -> str:
        """Take ``commit_id`` if idle (``OK``), otherwise answer ``BUSY``."""
        with self._state_lock:
            if self._state is not RunnerState.IDLE:
                self.stats.rejected_busy += 1
                logger.info(
                    "runner.rejected", commit_id=commit_id, state=self._state.value, current=self._current_commit
                )
                return Response.BUSY
            self._state = RunnerState.BUSY
            self._current_commit = commit_id
            self.stats.accepted += 1

        try:
            self._exec_pool.submit(self._execute, commit_id)
        except RuntimeError:
            # Pool already shut down
            self._become_idle()
            return Response.BUSY
        logger.info("runner.accepted", commit_id=commit_id)
        return Response.OK

    # ------------------------------------------------------------------ #
    # Execution and reporting
    # ------------------------------------------------------------------ #

    def _execute(self, commit_id: str) -> None:
        token = push_context(component="runner", commit_id=commit_id, runner_id=self.runner_id)
        try:
            try:
                with log_step("runner.execute", commit_id=commit_id) as timer:
                    report = self._run_action(commit_id)
                    timer.add_metric("passed", report.passed)
            finally:
                self._become_idle()

            if report.passed:
                self.stats.passed += 1
            else:
                self.stats.failed += 1
            self.send_results(commit_id, report.render())
        finally:
            token.restore()

    def _run_action(self, commit_id: str) -> ExecutionReport:
        try:
            return self.executor.run(commit_id)
        except Exception as e:
            logger.exception("runner.execution_crashed", commit_id=commit_id)
            return ExecutionReport.failure(commit_id, f"{type(e).__name__}: {e}")

    def _become_idle(self) -> None:
        with self._state_lock:
            if self._state is RunnerState.BUSY:
                self._state = RunnerState.IDLE
            self._current_commit = None

    def send_results(self, commit_id: str, payload: bytes) -> bool:
        """Deliver a report, retrying while the dispatcher is unavailable. Returns True on ``OK``."""
        retry = RetryContext(
            ExponentialBackoff(
                max_retries=self.settings.results_max_retries,
                base_delay=self.settings.results_base_delay,
            ),
            on_retry=self._on_results_retry,
            wait=self._shutdown.wait,
        )
        try:
            retry.run(self._deliver_results, commit_id, payload)
        except SpineCIError as e:
            self.stats.results_lost += 1
            logger.error("results.undelivered", commit_id=commit_id, attempts=retry.attempt, **e.to_dict())
            if not self._shutdown.is_set():
                # The dispatcher still holds the commit against this runner
                self._reannounce_needed.set()
                self.reannounce()
            return False
        self.stats.results_delivered += 1
        logger.info("results.delivered", commit_id=commit_id, bytes=len(payload), attempts=retry.attempt)
        return True

    def _deliver_results(self, commit_id: str, payload: bytes) -> None:
        host, port = self.settings.dispatcher_address
        reply = send_request(host, port, format_results(commit_id, payload), timeout=self.settings.request_timeout)
        if reply == Response.OK:
            return
        if reply == Response.INTERNAL_ERROR:
            raise TransientError(f"dispatcher could not store results: {reply!r}").with_context(commit_id=commit_id)
        raise _ResultsRejected(f"dispatcher rejected results: {reply!r}").with_context(commit_id=commit_id)

    def _on_results_retry(self, attempt: int, error: Exception, delay: float) -> None:
        logger.warning("results.retry", attempt=attempt, retry_in=round(delay, 2), error=str(error))

    # ------------------------------------------------------------------ #
    # Dispatcher liveness
    # ------------------------------------------------------------------ #

    def _touch(self) -> None:
        self._last_contact = time.monotonic()

    @property
    def seconds_since_contact(self) -> float:
        return time.monotonic() - self._last_contact

    def check_dispatcher(self) -> bool:
        """Return False (and shut down) when the dispatcher appears to be gone.

        A silent dispatcher is asked for ``STATUS``; anything but ``OK`` counts
        as lost. A reannounce left over from undelivered results is retried here.
        """
        if self._reannounce_needed.is_set() and not self._shutdown.is_set():
            self.reannounce()
        if self.seconds_since_contact < self.settings.dispatcher_timeout:
            return True
        host, port = self.settings.dispatcher_address
        try:
            reply = send_request(host, port, format_request(Command.STATUS), timeout=self.settings.request_timeout)
        except TransientError as e:
            error = e.message
        else:
            if reply == Response.OK:
                return True
            error = f"unexpected reply {reply[:80]!r}"
        logger.error(
            "runner.dispatcher_lost",
            dispatcher=self.settings.dispatcher,
            silent_seconds=round(self.seconds_since_contact, 1),
            error=error,
        )
        self.dispatcher_lost = True
        self.stop()
        return False

    def reannounce(self) -> bool:
        """Register again after a report was lost, so the dispatcher requeues the commit.

        Agent state is left alone: the runner may already be running its next
        commit. On failure the reannounce stays pending for the next check.
        """
        with self._reannounce_lock:
            if not self._reannounce_needed.is_set():
                return True
            host, port = self.address
            dispatcher_host, dispatcher_port = self.settings.dispatcher_address
            try:
                reply = send_request(
                    dispatcher_host,
                    dispatcher_port,
                    format_request(Command.REGISTER, host, port),
                    timeout=self.settings.request_timeout,
                )
            except TransientError as e:
                logger.warning("runner.reannounce_failed", runner_id=self.runner_id, error=e.message)
                return False
            if reply != Response.OK:
                logger.warning("runner.reannounce_rejected", runner_id=self.runner_id, reply=reply[:80])
                return False
            self._reannounce_needed.clear()
        self._touch()
        logger.info("runner.reannounced", runner_id=self.runner_id, dispatcher=self.settings.dispatcher)
        return True
