"""Settings for the dispatcher, runner and observer processes.

Every spine-ci process shares common configuration needs (bind address, log
level, data directory). ``SpineCIBaseSettings`` provides these; each process
declares its own fields and environment prefix.

Examples:
    >>> from spine_ci.core.settings import DispatcherSettings
    >>> settings = DispatcherSettings(port=9999)
    >>> settings.dispatch_backoff
    2.0

Environment:
    SPINE_CI_DISPATCHER_PORT=8888
    SPINE_CI_RUNNER_DISPATCHER=localhost:8888
    SPINE_CI_OBSERVER_POLL_INTERVAL=5
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_address(value: str, default_port: int | None = None) -> tuple[str, int]:
    """Split ``host:port`` into a tuple. ``default_port`` fills a bare host."""
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        if default_port is None:
            raise ValueError(f"expected host:port, got {value!r}")
        return value.strip(), default_port
    if not host or not port.isdigit():
        raise ValueError(f"expected host:port, got {value!r}")
    return host, int(port)


class SpineCIBaseSettings(BaseSettings):
    """Common settings shared by all spine-ci processes.

    Fields
    ──────
    host         : Bind address of the process's listening socket
    port         : Bind port (override per process)
    read_timeout : Seconds an inbound connection may take to send its request
    debug        : Verbose logging
    log_level    : Structlog log level
    log_format   : "console" or "json"
    data_dir     : Persistent data directory
    """

    model_config = SettingsConfigDict(
        env_prefix="SPINE_CI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Network ──────────────────────────────────────────────────
    host: str = "localhost"
    port: int = 0
    read_timeout: float = Field(30.0, gt=0)

    # ── Observability ────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "console"

    # ── Storage ──────────────────────────────────────────────────
    data_dir: Path = Field(
        default_factory=lambda: Path.cwd(),
        description="Base directory for persisted state",
    )

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"unsupported log level {value!r}")
        return value


class DispatcherSettings(SpineCIBaseSettings):
    """Dispatcher process settings (``SPINE_CI_DISPATCHER_`` prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="SPINE_CI_DISPATCHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    port: int = 8888

    results_dir: Path = Path("test_results")

    # ── Periodic tasks ───────────────────────────────────────────
    health_interval: float = Field(1.0, gt=0)
    redistribute_interval: float = Field(1.0, gt=0)

    # ── Dispatch ─────────────────────────────────────────────────
    dispatch_backoff: float = Field(2.0, gt=0)
    request_timeout: float = Field(5.0, gt=0)

    # ── Health probing ───────────────────────────────────────────
    probe_timeout: float = Field(3.0, gt=0)
    max_probe_failures: int = Field(3, ge=1)
    probe_workers: int = Field(8, ge=1)


class RunnerSettings(SpineCIBaseSettings):
    """Runner agent settings (``SPINE_CI_RUNNER_`` prefix).

    ``port = 0`` picks the first free port in ``port_range``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SPINE_CI_RUNNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    port: int = 0
    port_range: tuple[int, int] = (8900, 9000)

    dispatcher: str = "localhost:8888"

    repo_path: Path = Path(".")
    test_command: str = "python -m pytest -q"
    execution_timeout: float = Field(600.0, gt=0)

    request_timeout: float = Field(5.0, gt=0)

    # ── Reverse liveness check ───────────────────────────────────
    dispatcher_check_interval: float = Field(5.0, gt=0)
    dispatcher_timeout: float = Field(10.0, gt=0)

    # ── Result delivery retry ────────────────────────────────────
    results_max_retries: int = Field(5, ge=0)
    results_base_delay: float = Field(1.0, gt=0)

    @field_validator("dispatcher")
    @classmethod
    def _valid_dispatcher(cls, value: str) -> str:
        parse_address(value)
        return value

    @property
    def dispatcher_address(self) -> tuple[str, int]:
        return parse_address(self.dispatcher)


class ObserverSettings(SpineCIBaseSettings):
    """Observer settings (``SPINE_CI_OBSERVER_`` prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="SPINE_CI_OBSERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    repo_path: Path = Path(".")
    dispatcher: str = "localhost:8888"
    poll_interval: float = Field(5.0, gt=0)
    request_timeout: float = Field(5.0, gt=0)

    @field_validator("dispatcher")
    @classmethod
    def _valid_dispatcher(cls, value: str) -> str:
        parse_address(value)
        return value

    @property
    def dispatcher_address(self) -> tuple[str, int]:
        return parse_address(self.dispatcher)
