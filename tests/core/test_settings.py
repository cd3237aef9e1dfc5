"""Tests for spine_ci.core.settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from spine_ci.core.settings import (
    DispatcherSettings,
    ObserverSettings,
    RunnerSettings,
    SpineCIBaseSettings,
    parse_address,
)


class TestParseAddress:
    def test_host_and_port(self):
        assert parse_address("localhost:8888") == ("localhost", 8888)

    def test_default_port(self):
        assert parse_address("build-box", default_port=8888) == ("build-box", 8888)

    @pytest.mark.parametrize("value", ["localhost", ":8888", "host:", "host:abc"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_address(value)


class TestBaseSettings:
    def test_defaults(self):
        s = SpineCIBaseSettings()
        assert s.host == "localhost"
        assert s.log_level == "INFO"
        assert s.log_format == "console"

    def test_log_level_normalized(self):
        assert SpineCIBaseSettings(log_level="debug").log_level == "DEBUG"

    def test_log_level_rejected(self):
        with pytest.raises(ValidationError):
            SpineCIBaseSettings(log_level="chatty")


class TestDispatcherSettings:
    def test_defaults(self):
        s = DispatcherSettings()
        assert s.port == 8888
        assert s.results_dir == Path("test_results")
        assert s.health_interval == 1.0
        assert s.redistribute_interval == 1.0
        assert s.dispatch_backoff == 2.0
        assert s.max_probe_failures == 3

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SPINE_CI_DISPATCHER_PORT", "9999")
        monkeypatch.setenv("SPINE_CI_DISPATCHER_DISPATCH_BACKOFF", "0.5")
        s = DispatcherSettings()
        assert s.port == 9999
        assert s.dispatch_backoff == 0.5

    def test_init_beats_env(self, monkeypatch):
        monkeypatch.setenv("SPINE_CI_DISPATCHER_PORT", "9999")
        assert DispatcherSettings(port=7777).port == 7777

    def test_positive_intervals(self):
        with pytest.raises(ValidationError):
            DispatcherSettings(health_interval=0)


class TestRunnerSettings:
    def test_defaults(self):
        s = RunnerSettings()
        assert s.port == 0
        assert s.port_range == (8900, 9000)
        assert s.dispatcher_address == ("localhost", 8888)
        assert s.dispatcher_check_interval == 5.0
        assert s.dispatcher_timeout == 10.0

    def test_dispatcher_from_env(self, monkeypatch):
        monkeypatch.setenv("SPINE_CI_RUNNER_DISPATCHER", "ci-host:9000")
        assert RunnerSettings().dispatcher_address == ("ci-host", 9000)

    def test_invalid_dispatcher(self):
        with pytest.raises(ValidationError):
            RunnerSettings(dispatcher="no-port")


class TestObserverSettings:
    def test_defaults(self):
        s = ObserverSettings()
        assert s.poll_interval == 5.0
        assert s.dispatcher_address == ("localhost", 8888)
