"""Test execution for a single commit.

The runner agent hands a commit id to an :class:`ExecutionAction` and sends
back whatever report it produces. Actions never raise: a checkout that fails,
a test command that cannot start or runs past its timeout all become a
failure report, so the agent always returns to idle.

Two actions ship with spine-ci:

- :class:`GitExecutor` checks the commit out in a working copy and runs the
  configured test command there (``subprocess.run`` with a timeout).
- :class:`CallableExecutor` wraps a plain function; used by tests and for
  embedding the runner in another process.
"""

from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from spine_ci.core.errors import ExecutionError
from spine_ci.framework.logging import get_logger

logger = get_logger(__name__)

# Keep the tail of very chatty test runs
MAX_OUTPUT_CHARS = 1_000_000


@dataclass
class ExecutionReport:
    """Outcome of running the tests for one commit."""

    commit_id: str
    passed: bool
    output: str = ""
    exit_code: int | None = None
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def summary(self) -> str:
        verdict = "passed" if self.passed else "failed"
        return f"Tests {verdict} for commit {self.commit_id}"

    def render(self) -> bytes:
        """Report text sent to the dispatcher and stored as ``<commit>.txt``."""
        lines = [self.summary]
        if self.exit_code is not None:
            lines.append(f"exit code: {self.exit_code}")
        lines.append(f"duration: {self.duration_seconds:.2f}s")
        if self.error:
            lines.append(f"error: {self.error}")
        if self.output:
            lines.append("")
            lines.append(self.output.rstrip("\n"))
        return ("\n".join(lines) + "\n").encode("utf-8")

    @classmethod
    def failure(cls, commit_id: str, error: str, duration_seconds: float = 0.0) -> ExecutionReport:
        return cls(commit_id=commit_id, passed=False, error=error, duration_seconds=duration_seconds)


@runtime_checkable
class ExecutionAction(Protocol):
    """Runs the tests for a commit and returns a report. Must not raise."""

    def run(self, commit_id: str) -> ExecutionReport: ...


def _tail(text: str) -> str:
    if len(text) > MAX_OUTPUT_CHARS:
        return text[-MAX_OUTPUT_CHARS:]
    return text


class GitExecutor:
    """``git checkout <commit>`` then the test command, in ``repo_path``."""

    def __init__(
        self,
        repo_path: Path | str,
        test_command: str | list[str] = "python -m pytest -q",
        timeout: float = 600.0,
        git_timeout: float = 60.0,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.test_command = shlex.split(test_command) if isinstance(test_command, str) else list(test_command)
        self.timeout = timeout
        self.git_timeout = git_timeout

    def checkout(self, commit_id: str) -> None:
        """Check out ``commit_id``.

        Raises:
            ExecutionError: git is missing, timed out or exited non-zero
        """
        try:
            proc = subprocess.run(
                ["git", "checkout", "--quiet", commit_id],
                capture_output=True,
                text=True,
                timeout=self.git_timeout,
                cwd=str(self.repo_path),
            )
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(f"git checkout timed out after {self.git_timeout}s", cause=e).with_context(
                commit_id=commit_id
            ) from e
        except OSError as e:
            raise ExecutionError(f"could not run git: {e}", cause=e).with_context(commit_id=commit_id) from e
        if proc.returncode != 0:
            raise ExecutionError(
                f"git checkout failed (exit {proc.returncode}): {proc.stderr.strip()}"
            ).with_context(commit_id=commit_id)

    def run(self, commit_id: str) -> ExecutionReport:
        start = time.time()
        try:
            self.checkout(commit_id)
        except ExecutionError as e:
            logger.warning("execution.checkout_failed", commit_id=commit_id, error=e.message)
            return ExecutionReport.failure(commit_id, e.message, time.time() - start)

        try:
            proc = subprocess.run(
                self.test_command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=str(self.repo_path),
            )
        except subprocess.TimeoutExpired:
            return ExecutionReport.failure(commit_id, f"Test command timed out after {self.timeout}s", self.timeout)
        except OSError as e:
            return ExecutionReport.failure(commit_id, f"could not run test command: {e}", time.time() - start)

        output = proc.stdout
        if proc.stderr:
            output = f"{output}\n{proc.stderr}" if output else proc.stderr
        return ExecutionReport(
            commit_id=commit_id,
            passed=proc.returncode == 0,
            output=_tail(output),
            exit_code=proc.returncode,
            duration_seconds=time.time() - start,
        )


class CallableExecutor:
    """Adapts ``func(commit_id) -> str | bytes`` to :class:`ExecutionAction`.

    A return value counts as a pass; an exception becomes a failure report.
    """

    def __init__(self, func: Callable[[str], str | bytes]) -> None:
        self._func = func

    def run(self, commit_id: str) -> ExecutionReport:
        start = time.time()
        try:
            output = self._func(commit_id)
        except Exception as e:
            logger.warning("execution.failed", commit_id=commit_id, error=str(e))
            return ExecutionReport.failure(commit_id, f"{type(e).__name__}: {e}", time.time() - start)
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return ExecutionReport(
            commit_id=commit_id,
            passed=True,
            output=output or "",
            duration_seconds=time.time() - start,
        )
