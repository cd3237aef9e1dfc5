"""Health monitor: periodic ``PING`` probes of every registered runner.

Each tick submits one probe per runner to a thread pool; a runner whose
previous probe has not returned yet is skipped. Probe outcomes:

=================  ==================================================
``PONG``           failure count reset, ``last_seen`` refreshed
timeout / other    soft failure; evicted after ``max_failures`` in a row
refused / reset    hard failure; evicted immediately
=================  ==================================================

Eviction goes through :meth:`RunnerRegistry.remove`, which requeues the
runner's commit.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

from spine_ci.core.errors import PeerTimeoutError, PeerUnavailableError
from spine_ci.core.scheduling import PeriodicTask
from spine_ci.dispatcher.models import Runner
from spine_ci.dispatcher.registry import RunnerRegistry
from spine_ci.framework.logging import get_logger
from spine_ci.protocol.client import send_request
from spine_ci.protocol.commands import Command, Response, format_request

logger = get_logger(__name__)


class ProbeOutcome(str, Enum):
    PONG = "pong"
    SOFT_FAILURE = "soft_failure"
    HARD_FAILURE = "hard_failure"


class HealthMonitor:
    """Probes runners on a fixed period and evicts the dead ones."""

    def __init__(
        self,
        registry: RunnerRegistry,
        *,
        interval: float = 1.0,
        probe_timeout: float = 3.0,
        max_failures: int = 3,
        workers: int = 8,
    ) -> None:
        self._registry = registry
        self._probe_timeout = probe_timeout
        self._max_failures = max_failures
        self._workers = workers
        self._pool: ThreadPoolExecutor | None = None
        self._probing: set[str] = set()
        self._lock = threading.Lock()
        self._task = PeriodicTask("health-monitor", self.tick, interval)

    def start(self) -> None:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="spine-ci-probe")
        self._task.start()

    def stop(self) -> None:
        self._task.stop()
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)

    @property
    def task(self) -> PeriodicTask:
        return self._task

    def tick(self) -> int:
        """Submit a probe for every runner not already being probed. Returns the count submitted."""
        submitted = 0
        for runner in self._registry.snapshot():
            with self._lock:
                if self._pool is None or runner.runner_id in self._probing:
                    continue
                self._probing.add(runner.runner_id)
                pool = self._pool
            try:
                pool.submit(self._probe_and_record, runner)
            except RuntimeError:
                # Pool shut down by stop() between the check and the submit
                with self._lock:
                    self._probing.discard(runner.runner_id)
                break
            submitted += 1
        return submitted

    def probe(self, runner: Runner) -> ProbeOutcome:
        """Send one ``PING`` and classify the result."""
        try:
            reply = send_request(
                runner.host, runner.port, format_request(Command.PING), timeout=self._probe_timeout
            )
        except PeerTimeoutError:
            return ProbeOutcome.SOFT_FAILURE
        except PeerUnavailableError:
            return ProbeOutcome.HARD_FAILURE
        if reply == Response.PONG:
            return ProbeOutcome.PONG
        logger.debug("probe.unexpected_reply", runner_id=runner.runner_id, reply=reply[:80])
        return ProbeOutcome.SOFT_FAILURE

    def record(self, runner_id: str, outcome: ProbeOutcome) -> bool:
        """Apply a probe outcome to the registry. Returns True if the runner was evicted."""
        if outcome is ProbeOutcome.PONG:
            self._registry.record_probe_success(runner_id)
            return False
        return self._registry.record_probe_failure(
            runner_id,
            hard=outcome is ProbeOutcome.HARD_FAILURE,
            max_failures=self._max_failures,
        )

    def _probe_and_record(self, runner: Runner) -> None:
        try:
            outcome = self.probe(runner)
            if self.record(runner.runner_id, outcome):
                logger.warning("runner.evicted", runner_id=runner.runner_id, outcome=outcome.value)
        except Exception:
            logger.exception("probe.failed", runner_id=runner.runner_id)
        finally:
            with self._lock:
                self._probing.discard(runner.runner_id)
