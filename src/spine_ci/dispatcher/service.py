"""Dispatcher service: the connection front of the dispatcher process.

Owns the commit queue, the runner registry, the dispatch engine, the health
monitor, the redistributor and the listening server, and routes each inbound
request to one of them.

Usage (programmatic)::

    from spine_ci.core.settings import DispatcherSettings
    from spine_ci.dispatcher import DispatcherService

    service = DispatcherService(DispatcherSettings(port=0))
    host, port = service.start()   # background threads, returns immediately
    ...
    service.stop()

Usage (CLI)::

    spine-ci dispatcher --port 8888 --results-dir test_results
"""

from __future__ import annotations

import signal
import threading
from datetime import datetime
from typing import Any

from spine_ci.core.errors import MalformedRequestError, StorageError
from spine_ci.core.scheduling import PeriodicTask
from spine_ci.core.settings import DispatcherSettings
from spine_ci.core.storage import ReportStore, ResultStore
from spine_ci.dispatcher.engine import DispatchEngine
from spine_ci.dispatcher.health import HealthMonitor
from spine_ci.dispatcher.models import DispatcherStats, utcnow
from spine_ci.dispatcher.queue import CommitQueue
from spine_ci.dispatcher.registry import RunnerRegistry
from spine_ci.framework.logging import bind_context, get_logger
from spine_ci.protocol.commands import Command, Request, Response
from spine_ci.protocol.server import ProtocolServer

logger = get_logger(__name__)


class DispatcherService:
    """Wires the dispatcher components together and serves the protocol."""

    def __init__(
        self,
        settings: DispatcherSettings | None = None,
        *,
        store: ReportStore | None = None,
    ) -> None:
        self.settings = settings or DispatcherSettings()
        self.stats = DispatcherStats()
        self.queue = CommitQueue()
        self.registry = RunnerRegistry(self.queue, stats=self.stats)
        self.store: ReportStore = store or ResultStore(self.settings.results_dir)
        self.engine = DispatchEngine(
            self.registry,
            backoff=self.settings.dispatch_backoff,
            request_timeout=self.settings.request_timeout,
            stats=self.stats,
        )
        self.health = HealthMonitor(
            self.registry,
            interval=self.settings.health_interval,
            probe_timeout=self.settings.probe_timeout,
            max_failures=self.settings.max_probe_failures,
            workers=self.settings.probe_workers,
        )
        self._redistributor = PeriodicTask(
            "redistributor", self.engine.redistribute, self.settings.redistribute_interval
        )
        self._server = ProtocolServer(
            self.settings.host,
            self.settings.port,
            self.handle,
            component="dispatcher",
            request_timeout=self.settings.read_timeout,
        )
        self._shutdown = threading.Event()
        self._started_at: datetime | None = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def address(self) -> tuple[str, int]:
        return self._server.address

    def start(self) -> tuple[str, int]:
        """Bind the server and start the background tasks.

        Raises:
            BindError: the listening address is not available
        """
        address = self._server.start()
        self._started_at = utcnow()
        self.health.start()
        self._redistributor.start()
        logger.info("dispatcher.started", address="%s:%d" % address, results_dir=str(self.settings.results_dir))
        return address

    def serve_forever(self) -> None:
        """Start and block until SIGINT/SIGTERM or :meth:`stop`."""
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
        """Stop the server, the periodic tasks and the attempt loops."""
        self._shutdown.set()
        self._server.stop()
        self._redistributor.stop()
        self.health.stop()
        self.engine.stop()
        logger.info("dispatcher.stopped", **self.stats.to_dict())

    def _handle_signal(self, signum, frame):
        logger.info("dispatcher.signal_received", signal=signum)
        self._shutdown.set()

    # ------------------------------------------------------------------ #
    # Request routing
    # ------------------------------------------------------------------ #

    def handle(self, request: Request) -> str:
        """Route one request and return the response line."""
        command = request.command
        if command is Command.REGISTER:
            host = request.arg(0, Response.INVALID_REGISTER)
            port = request.arg(1, Response.INVALID_REGISTER)
            return self.register(host, port)
        if command in (Command.STATUS, Command.PING):
            return Response.OK
        if command is Command.DISPATCH:
            return self.submit(request.arg(0, Response.INVALID_DISPATCH))
        if command is Command.RESULTS:
            if request.payload is None:
                raise MalformedRequestError("results without payload", reply=Response.INVALID_RESULTS)
            return self.report_results(request.arg(0, Response.INVALID_RESULTS), request.payload)
        # RUNTEST is a runner-side command
        raise MalformedRequestError(f"{command.value} is not accepted by the dispatcher").with_context(
            command=command.value
        )

    def register(self, host: str, port: int | str) -> str:
        """Register a runner and hand it any waiting commits."""
        self.registry.register(host, port)
        self.engine.redistribute()
        return Response.OK

    def submit(self, commit_id: str) -> str:
        """Queue a commit and start dispatching it if a runner exists.

        With no runner registered the commit stays pending and the reply says
        so; the redistributor picks it up once a runner registers.
        """
        try:
            added = self.queue.submit(commit_id)
        except MalformedRequestError as e:
            e.reply = Response.INVALID_DISPATCH
            raise
        bind_context(commit_id=commit_id)

        if added:
            self.stats.incr("submitted")
        else:
            self.stats.incr("duplicates")
            logger.info("commit.duplicate", commit_id=commit_id, state=self.queue.state(commit_id).value)

        if len(self.registry) == 0:
            logger.info("commit.no_runners", commit_id=commit_id)
            return Response.NO_RUNNERS
        if added:
            self.engine.dispatch(commit_id)
        return Response.OK

    def report_results(self, commit_id: str, payload: bytes) -> str:
        """Persist a report, complete the commit and free its runner.

        Raises:
            MalformedRequestError: commit id unusable as a file name
            StorageError: the report could not be written; the commit stays
                dispatched so the runner's retry can deliver it again
        """
        bind_context(commit_id=commit_id)
        try:
            self.store.write(commit_id, payload)
        except MalformedRequestError as e:
            e.reply = Response.INVALID_RESULTS
            raise
        except StorageError:
            logger.error("results.store_failed", commit_id=commit_id)
            raise

        newly_completed, runner_id = self.queue.complete(commit_id)
        if runner_id is not None:
            self.registry.mark_idle(runner_id)
        if newly_completed:
            self.stats.incr("completed")
            logger.info("commit.completed", commit_id=commit_id, runner_id=runner_id, bytes=len(payload))
        else:
            logger.info("results.overwritten", commit_id=commit_id)
        return Response.OK

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def get_stats(self) -> dict[str, Any]:
        """Counters plus a snapshot of runners and commit states."""
        uptime = (utcnow() - self._started_at).total_seconds() if self._started_at else 0.0
        return {
            "address": "%s:%d" % self.address,
            "uptime_seconds": uptime,
            "counters": self.stats.to_dict(),
            "commits": self.queue.counts(),
            "runners": [r.to_dict() for r in self.registry.snapshot()],
            "active_attempts": self.engine.active_attempts,
            "tasks": [self.health.task.health(), self._redistributor.health()],
        }
