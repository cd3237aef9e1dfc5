"""Threading-based periodic task.

The health monitor, the redistributor, the runner's dispatcher check and the
observer's HEAD poll all run a callback on a fixed period in a daemon thread.

┌──────────────────────────────────────────────────────────────────────┐
│  PeriodicTask                                                        │
│                                                                      │
│   start()                                                            │
│      │                                                               │
│      ▼                                                               │
│   ┌──────────────────────────────────────────────────────────┐       │
│   │  Daemon Thread (loop)                                     │       │
│   │                                                          │       │
│   │   while not stop_event.wait(interval):                   │       │
│   │       tick_count += 1                                    │       │
│   │       callback()        ◄── exceptions logged, loop lives │       │
│   └──────────────────────────────────────────────────────────┘       │
│                                                                      │
│   stop()  →  stop_event.set(); thread.join(timeout)                  │
└──────────────────────────────────────────────────────────────────────┘

The period is a tunable, not a correctness-critical value. A callback that
takes longer than the period delays the next tick; callbacks that do
network I/O hand it off to their own threads.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from spine_ci.framework.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Calls ``callback`` every ``interval`` seconds in a daemon thread.

    Example:
        >>> task = PeriodicTask("health-monitor", monitor.tick, interval=1.0)
        >>> task.start()
        >>> # ... later ...
        >>> task.stop()
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Any],
        interval: float,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self._callback = callback
        self._interval = interval
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        """Start the loop in a daemon thread. Calling twice is a no-op."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                logger.warning("periodic.already_started", task=self.name)
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name=f"spine-ci-{self.name}")
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop, waiting up to ``timeout`` for the current tick."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("periodic.stop_timeout", task=self.name)

    def _loop(self) -> None:
        logger.debug("periodic.started", task=self.name, interval_seconds=self._interval)
        if self._run_immediately:
            self._tick()
        while not self._stop_event.wait(self._interval):
            self._tick()
        logger.debug("periodic.stopped", task=self.name, tick_count=self._tick_count)

    def _tick(self) -> None:
        with self._lock:
            self._tick_count += 1
            self._last_tick = datetime.now(UTC)
        try:
            self._callback()
        except Exception:
            logger.exception("periodic.tick_failed", task=self.name)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    def health(self) -> dict[str, Any]:
        """Return task health for status output."""
        return {
            "task": self.name,
            "healthy": self.is_running,
            "tick_count": self._tick_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "interval_seconds": self._interval,
        }
