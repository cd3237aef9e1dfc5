"""
Result report storage.

One file per commit, named ``<commit_id>.txt`` under a results directory
that is created on first write. Contents are exactly the payload bytes.
Writing the same commit twice overwrites the earlier report.

Writes go through a temporary file and ``os.replace`` so a reader never
sees a half-written report.

Example:
    >>> store = ResultStore(Path("test_results"))
    >>> path = store.write("abc123", b"Tests passed for commit abc123")
    >>> store.read("abc123")
    b'Tests passed for commit abc123'
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from spine_ci.core.errors import MalformedRequestError, StorageError
from spine_ci.framework.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class ReportStore(Protocol):
    """Anything that can persist a report for a commit."""

    def write(self, commit_id: str, payload: bytes) -> Path | None: ...


def validate_commit_id(commit_id: str) -> str:
    """Reject ids that are empty or could escape the results directory."""
    if not commit_id or not commit_id.strip():
        raise MalformedRequestError("empty commit id")
    if "/" in commit_id or "\\" in commit_id or commit_id in (".", "..") or "\x00" in commit_id:
        raise MalformedRequestError(f"invalid commit id {commit_id!r}").with_context(commit_id=commit_id)
    return commit_id


class ResultStore:
    """File-per-commit report store."""

    suffix = ".txt"

    def __init__(self, results_dir: Path | str) -> None:
        self.results_dir = Path(results_dir)
        self._lock = threading.Lock()

    def path_for(self, commit_id: str) -> Path:
        return self.results_dir / f"{validate_commit_id(commit_id)}{self.suffix}"

    def write(self, commit_id: str, payload: bytes) -> Path:
        """Persist ``payload`` for ``commit_id``, replacing any earlier report.

        Raises:
            MalformedRequestError: commit id unusable as a file name
            StorageError: the directory or file could not be written
        """
        path = self.path_for(commit_id)
        try:
            with self._lock:
                self.results_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=self.results_dir, prefix=f".{commit_id}.")
                try:
                    with os.fdopen(fd, "wb") as fh:
                        fh.write(payload)
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
        except OSError as e:
            raise StorageError(f"could not write report for {commit_id}", cause=e).with_context(
                commit_id=commit_id, path=str(path)
            ) from e

        logger.info("results.stored", commit_id=commit_id, path=str(path), bytes=len(payload))
        return path

    def read(self, commit_id: str) -> bytes | None:
        """Return the stored report, or None when there is none."""
        path = self.path_for(commit_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def exists(self, commit_id: str) -> bool:
        return self.path_for(commit_id).is_file()

    def list_commits(self) -> list[str]:
        """Commit ids with a stored report, sorted."""
        if not self.results_dir.is_dir():
            return []
        return sorted(p.stem for p in self.results_dir.glob(f"*{self.suffix}") if not p.name.startswith("."))
