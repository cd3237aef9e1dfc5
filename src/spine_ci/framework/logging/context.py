"""
Logging context management using contextvars.

Every thread in spine-ci (connection handlers, dispatch attempts, probes,
the runner's execution thread) sets the component and, where relevant, the
commit and runner it is working on. The context is attached to every log
entry by a structlog processor, so call sites only log the event itself.

contextvars are per-thread for plain threads, so a handler thread setting
``commit_id`` never leaks it into another handler.
"""

from contextvars import ContextVar
from dataclasses import asdict, dataclass
from typing import Any

import structlog


@dataclass
class LogContext:
    """
    Context attached to all log entries.

    component: Process role ("dispatcher", "runner", "observer")
    commit_id: Commit currently being handled
    runner_id: Runner currently being addressed ("host:port")
    span_id / parent_span_id: Nested timing blocks
    step: Current step name
    attempt: Dispatch pass number (default 1)
    """

    component: str | None = None
    commit_id: str | None = None
    runner_id: str | None = None

    # Tracing
    span_id: str | None = None
    parent_span_id: str | None = None
    step: str | None = None

    attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict (excludes attempt=1 default)."""
        result = {}
        for k, v in asdict(self).items():
            if v is None:
                continue
            if k == "attempt" and v == 1:
                continue
            result[k] = v
        return result

    def merge(self, **kwargs) -> "LogContext":
        """Create new context with merged values."""
        current = asdict(self)
        current.update({k: v for k, v in kwargs.items() if v is not None and k in current})
        return LogContext(**current)


_log_context: ContextVar[LogContext] = ContextVar("spine_ci_log_context")  # noqa: B039


def get_context() -> LogContext:
    """Get the current log context."""
    return _log_context.get(LogContext())


def set_context(
    component: str | None = None,
    commit_id: str | None = None,
    runner_id: str | None = None,
    step: str | None = None,
    span_id: str | None = None,
    parent_span_id: str | None = None,
    attempt: int = 1,
) -> LogContext:
    """
    Set the current log context.

    This replaces the current context. Use bind_context() to add to existing.
    """
    ctx = LogContext(
        component=component,
        commit_id=commit_id,
        runner_id=runner_id,
        step=step,
        span_id=span_id,
        parent_span_id=parent_span_id,
        attempt=attempt,
    )
    _log_context.set(ctx)
    return ctx


def bind_context(**kwargs) -> LogContext:
    """Merge values into the current context and return it."""
    updated = get_context().merge(**kwargs)
    _log_context.set(updated)
    return updated


def clear_context() -> None:
    """Clear the current context (reset to empty)."""
    _log_context.set(LogContext())


class _ContextToken:
    """Token for restoring context after a scoped operation."""

    def __init__(self, token):
        self._token = token

    def restore(self):
        """Restore the previous context."""
        _log_context.reset(self._token)


def push_context(**kwargs) -> _ContextToken:
    """
    Push new context values, returning a token to restore later.

    Usage:
        token = push_context(commit_id="abc123")
        try:
            dispatch()
        finally:
            token.restore()
    """
    updated = get_context().merge(**kwargs)
    token = _log_context.set(updated)
    return _ContextToken(token)


def add_context_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor that adds the current context to every log entry."""
    for key, value in get_context().to_dict().items():
        if key not in event_dict:
            event_dict[key] = value
    return event_dict


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (typically ``get_logger(__name__)``)."""
    return structlog.get_logger(name)
