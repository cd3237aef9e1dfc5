"""
Structured error types for spine-ci.

Every error raised by spine-ci code derives from :class:`SpineCIError` and
carries a category, a retryable flag and structured context (commit, runner,
peer address). The hierarchy follows the failure taxonomy of the system:

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────────┐
        │                        SpineCIError                           │
        │            (category, retryable, context, cause)              │
        ├───────────────────────────────────────────────────────────────┤
        │                                                               │
        │  MalformedRequestError   TransientError        ExecutionError │
        │  (PROTOCOL)              (NETWORK, retryable)  (EXECUTION)    │
        │                               │                               │
        │                     PeerUnavailableError                      │
        │                     PeerTimeoutError                          │
        │                                                               │
        │  StorageError            ConfigError           FatalError     │
        │  (STORAGE)               (CONFIG)              (FATAL)        │
        │                                                    │          │
        │                                   BindError  RegistrationError│
        └───────────────────────────────────────────────────────────────┘

Only :class:`FatalError` subclasses are allowed to terminate a process;
everything else is absorbed by the connection handler or background task
that hit it.

Usage:
    from spine_ci.core.errors import MalformedRequestError

    if not commit_id:
        raise MalformedRequestError("missing commit id").with_context(command="DISPATCH")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and log routing."""

    # Wire-level errors
    PROTOCOL = "PROTOCOL"  # Unparseable command or arguments
    NETWORK = "NETWORK"  # Peer refused, reset or timed out

    # Work errors
    EXECUTION = "EXECUTION"  # Checkout / test command failed
    STORAGE = "STORAGE"  # Result report could not be written

    # Startup errors
    CONFIG = "CONFIG"  # Invalid settings
    FATAL = "FATAL"  # Process cannot continue

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        command: Protocol command being processed
        commit_id: Commit the error relates to
        runner_id: Runner identity ("host:port")
        host: Peer host
        port: Peer port
        metadata: Additional key-value pairs
    """

    command: str | None = None
    commit_id: str | None = None
    runner_id: str | None = None
    host: str | None = None
    port: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["command", "commit_id", "runner_id", "host", "port"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SpineCIError(Exception):
    """
    Base exception for all spine-ci errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    can override both per instance.

    Examples:
        >>> error = SpineCIError("unexpected state")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(commit_id="abc123").context.commit_id
        'abc123'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SpineCIError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# PROTOCOL ERRORS
# =============================================================================


class MalformedRequestError(SpineCIError):
    """
    Unparseable command or arguments.

    The receiver answers with an explicit invalid-command message and makes
    no state change. ``reply`` is the text sent back to the peer.
    """

    default_category = ErrorCategory.PROTOCOL

    def __init__(self, message: str, *, reply: str = "Invalid command", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.reply = reply


# =============================================================================
# TRANSIENT ERRORS (peer unavailability)
# =============================================================================


class TransientError(SpineCIError):
    """Temporary peer unavailability; absorbed by the caller."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class PeerUnavailableError(TransientError):
    """Hard connection failure: refused, reset, unreachable or closed early."""

    pass


class PeerTimeoutError(TransientError):
    """The peer accepted the connection but did not answer in time."""

    pass


# =============================================================================
# WORK ERRORS
# =============================================================================


class ExecutionError(SpineCIError):
    """The checkout or test command could not be run for a commit."""

    default_category = ErrorCategory.EXECUTION


class StorageError(SpineCIError):
    """A result report could not be persisted."""

    default_category = ErrorCategory.STORAGE


class ConfigError(SpineCIError):
    """Invalid configuration value."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# FATAL ERRORS
# =============================================================================


class FatalError(SpineCIError):
    """A condition the process cannot recover from; the CLI exits with code 1."""

    default_category = ErrorCategory.FATAL


class BindError(FatalError):
    """The listening socket could not be bound at startup."""

    pass


class RegistrationError(FatalError):
    """The runner's initial registration was rejected or could not be sent."""

    pass


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, SpineCIError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError, OSError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, SpineCIError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.PROTOCOL
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SpineCIError",
    "MalformedRequestError",
    "TransientError",
    "PeerUnavailableError",
    "PeerTimeoutError",
    "ExecutionError",
    "StorageError",
    "ConfigError",
    "FatalError",
    "BindError",
    "RegistrationError",
    "is_retryable",
    "categorize_error",
]
