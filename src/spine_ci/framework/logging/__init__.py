"""
spine-ci logging - structured, component-aware logging.

This module provides:
- Structured logging with structlog
- Commit/runner context propagation via contextvars
- Timing utilities for dispatch and execution steps
- Environment-based configuration

Usage:
    from spine_ci.framework.logging import get_logger, configure_logging, log_step, set_context

    # Configure once at startup
    configure_logging()

    # Get a logger
    log = get_logger(__name__)

    # Set context (automatically attached to all logs)
    set_context(component="runner", runner_id="localhost:8900")

    # Log with timing
    with log_step("runner.execute", commit_id="abc123"):
        run_tests()
"""

from spine_ci.framework.logging.config import configure_logging, is_configured
from spine_ci.framework.logging.context import (
    LogContext,
    bind_context,
    clear_context,
    get_context,
    get_logger,
    push_context,
    set_context,
)
from spine_ci.framework.logging.timing import TimingResult, log_step, timed_block

__all__ = [
    # Configuration
    "configure_logging",
    "is_configured",
    # Context
    "get_logger",
    "set_context",
    "clear_context",
    "get_context",
    "bind_context",
    "push_context",
    "LogContext",
    # Timing
    "TimingResult",
    "log_step",
    "timed_block",
]
