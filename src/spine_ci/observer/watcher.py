"""Repository observer: notifies the dispatcher when a working copy's HEAD moves.

Each poll runs ``git rev-parse HEAD`` in ``repo_path`` (after an optional
``git pull``) and, when the revision differs from the last one the dispatcher
accepted, sends ``DISPATCH:<commit>``. A failed notification is retried on the
next poll because the remembered revision only advances on success.
"""

from __future__ import annotations

import signal
import subprocess
import threading
from pathlib import Path

from spine_ci.core.errors import ExecutionError, TransientError
from spine_ci.core.scheduling import PeriodicTask
from spine_ci.core.settings import ObserverSettings
from spine_ci.framework.logging import get_logger
from spine_ci.protocol.client import send_request
from spine_ci.protocol.commands import Command, Response, format_request

logger = get_logger(__name__)


def _git(repo_path: Path, *args: str, timeout: float = 60.0) -> str:
    """Run a git command in ``repo_path`` and return its stripped stdout.

    Raises:
        ExecutionError: git missing, timed out or exited non-zero
    """
    try:
        proc = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=str(repo_path),
        )
    except subprocess.TimeoutExpired as e:
        raise ExecutionError(f"git {args[0]} timed out after {timeout}s", cause=e) from e
    except OSError as e:
        raise ExecutionError(f"could not run git: {e}", cause=e) from e
    if proc.returncode != 0:
        raise ExecutionError(f"git {args[0]} failed (exit {proc.returncode}): {proc.stderr.strip()}")
    return proc.stdout.strip()


class RepositoryObserver:
    """Polls a repository and submits new HEAD revisions to the dispatcher."""

    def __init__(self, settings: ObserverSettings | None = None, *, pull: bool = False) -> None:
        self.settings = settings or ObserverSettings()
        self.pull = pull
        self.last_commit: str | None = None
        self._task = PeriodicTask(
            "observer", self.poll, self.settings.poll_interval, run_immediately=True
        )
        self._shutdown = threading.Event()

    def current_head(self) -> str:
        repo = self.settings.repo_path
        if self.pull:
            _git(repo, "pull", "--quiet")
        return _git(repo, "rev-parse", "HEAD")

    def notify(self, commit_id: str) -> bool:
        """Send ``DISPATCH`` for ``commit_id``. True when the dispatcher queued it.

        ``No runners are registered`` still counts: the commit is queued.
        """
        host, port = self.settings.dispatcher_address
        try:
            reply = send_request(
                host, port, format_request(Command.DISPATCH, commit_id), timeout=self.settings.request_timeout
            )
        except TransientError as e:
            logger.warning("observer.dispatcher_unreachable", dispatcher=self.settings.dispatcher, error=e.message)
            return False
        if reply in (Response.OK, Response.NO_RUNNERS):
            logger.info("observer.dispatched", commit_id=commit_id, reply=reply)
            return True
        logger.warning("observer.dispatch_rejected", commit_id=commit_id, reply=reply)
        return False

    def poll(self) -> str | None:
        """One observation. Returns the commit sent to the dispatcher, if any."""
        try:
            head = self.current_head()
        except ExecutionError as e:
            logger.warning("observer.git_failed", repo=str(self.settings.repo_path), error=e.message)
            return None
        if head == self.last_commit:
            return None
        if self.notify(head):
            self.last_commit = head
            return head
        return None

    def start(self) -> None:
        logger.info(
            "observer.started",
            repo=str(self.settings.repo_path),
            dispatcher=self.settings.dispatcher,
            interval_seconds=self.settings.poll_interval,
        )
        self._task.start()

    def stop(self) -> None:
        self._shutdown.set()
        self._task.stop()

    def serve_forever(self) -> None:
        """Poll until SIGINT/SIGTERM or :meth:`stop`."""
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

    def _handle_signal(self, signum, frame):
        logger.info("observer.signal_received", signal=signum)
        self._shutdown.set()
