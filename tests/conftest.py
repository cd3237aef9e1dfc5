"""
Shared pytest fixtures and configuration for spine-ci tests.

This module provides:
- Queue / registry pairs for dispatcher unit tests
- Fake runner and dispatcher peers on ephemeral ports
- Fast settings (short periods and timeouts) for the three processes
- Log-context cleanup between tests

Usage:
    Fixtures are auto-discovered by pytest; request them as arguments.

    def test_something(registry, fake_peer):
        runner = fake_peer(reply="OK")
        registry.register(runner.host, runner.port)
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from spine_ci.core.settings import DispatcherSettings, ObserverSettings, RunnerSettings
from spine_ci.dispatcher.models import DispatcherStats
from spine_ci.dispatcher.queue import CommitQueue
from spine_ci.dispatcher.registry import RunnerRegistry
from spine_ci.framework.logging import clear_context
from tests._support.peers import LOCALHOST, FakePeer, free_port


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_log_context() -> Generator[None, None, None]:
    """Each test starts with an empty log context."""
    clear_context()
    yield
    clear_context()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep SPINE_CI_* variables and a stray .env from leaking into settings."""
    for key in list(os.environ):
        if key.startswith("SPINE_CI_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


# =============================================================================
# Dispatcher state
# =============================================================================


@pytest.fixture
def stats() -> DispatcherStats:
    return DispatcherStats()


@pytest.fixture
def queue() -> CommitQueue:
    return CommitQueue()


@pytest.fixture
def registry(queue: CommitQueue, stats: DispatcherStats) -> RunnerRegistry:
    return RunnerRegistry(queue, stats=stats)


# =============================================================================
# Peers
# =============================================================================


@pytest.fixture
def fake_peer() -> Generator[Callable[..., FakePeer], None, None]:
    """Factory for started fake peers; all are stopped at teardown."""
    peers: list[FakePeer] = []

    def factory(reply="OK", **kwargs) -> FakePeer:
        peer = FakePeer(reply, **kwargs).start()
        peers.append(peer)
        return peer

    yield factory
    for peer in peers:
        peer.stop()


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def results_dir(tmp_path: Path) -> Path:
    return tmp_path / "test_results"


@pytest.fixture
def dispatcher_settings(results_dir: Path) -> DispatcherSettings:
    return DispatcherSettings(
        host=LOCALHOST,
        port=0,
        results_dir=results_dir,
        health_interval=0.1,
        redistribute_interval=0.1,
        dispatch_backoff=0.1,
        request_timeout=1.0,
        probe_timeout=0.5,
        max_probe_failures=3,
    )


@pytest.fixture
def runner_settings_factory() -> Callable[..., RunnerSettings]:
    """Build runner settings pointing at ``dispatcher`` with fast timings."""

    def factory(dispatcher: str, **overrides) -> RunnerSettings:
        values = {
            "host": LOCALHOST,
            "port": free_port(),
            "dispatcher": dispatcher,
            "request_timeout": 1.0,
            "dispatcher_check_interval": 0.1,
            "dispatcher_timeout": 0.3,
            "results_max_retries": 3,
            "results_base_delay": 0.05,
        }
        values.update(overrides)
        return RunnerSettings(**values)

    return factory


@pytest.fixture
def observer_settings(tmp_path: Path) -> ObserverSettings:
    return ObserverSettings(repo_path=tmp_path, dispatcher=f"{LOCALHOST}:8888", poll_interval=0.1)
