"""
Tests for the logging module.

Tests verify:
- Log context carries commit and runner ids
- Timing logs emit duration
- Context is restored after scoped steps
"""

import pytest

from spine_ci.framework.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_context,
    get_logger,
    is_configured,
    log_step,
    push_context,
    set_context,
    timed_block,
)
from spine_ci.framework.logging.context import add_context_processor


class TestLogContext:
    """Test LogContext dataclass."""

    def test_to_dict_excludes_none(self):
        ctx = LogContext(commit_id="abc123", runner_id=None)
        d = ctx.to_dict()
        assert d["commit_id"] == "abc123"
        assert "runner_id" not in d

    def test_merge_creates_new_context(self):
        ctx1 = LogContext(component="dispatcher")
        ctx2 = ctx1.merge(commit_id="abc123")

        assert ctx1.commit_id is None
        assert ctx2.component == "dispatcher"
        assert ctx2.commit_id == "abc123"

    def test_merge_ignores_unknown_keys(self):
        ctx = LogContext().merge(workflow="nope", runner_id="h:1")
        assert ctx.runner_id == "h:1"
        assert not hasattr(ctx, "workflow")


class TestContextManagement:
    """Test context set/get/clear operations."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_set_context_replaces(self):
        set_context(component="runner", commit_id="a")
        ctx = set_context(component="dispatcher")
        assert ctx.component == "dispatcher"
        assert get_context().commit_id is None

    def test_bind_context_merges(self):
        set_context(component="dispatcher")
        bind_context(commit_id="abc")
        ctx = get_context()
        assert ctx.component == "dispatcher"
        assert ctx.commit_id == "abc"

    def test_push_context_restores(self):
        set_context(component="dispatcher")
        token = push_context(commit_id="abc")
        assert get_context().commit_id == "abc"
        token.restore()
        assert get_context().commit_id is None
        assert get_context().component == "dispatcher"

    def test_processor_adds_context_without_overwriting(self):
        set_context(component="runner", commit_id="abc")
        event = add_context_processor(None, "info", {"event": "x", "commit_id": "explicit"})
        assert event["component"] == "runner"
        assert event["commit_id"] == "explicit"


class TestTiming:
    def setup_method(self):
        clear_context()

    def test_timed_block_measures(self):
        with timed_block("work") as timer:
            pass
        assert timer.ended_at is not None
        assert timer.duration_ms >= 0

    def test_log_step_sets_step_context(self):
        with log_step("runner.execute", commit_id="abc") as timer:
            ctx = get_context()
            assert ctx.step == "runner.execute"
            assert ctx.span_id == timer.span_id
        assert get_context().step is None

    def test_log_step_reraises_and_records_error(self):
        with pytest.raises(RuntimeError):
            with log_step("runner.execute") as timer:
                raise RuntimeError("boom")
        assert timer.status == "error"
        assert timer.error_info["error_type"] == "RuntimeError"

    def test_metrics_in_log_dict(self):
        with log_step("dispatch.pass", log_start=False) as timer:
            timer.add_metric("runners", 3)
        assert timer.to_log_dict()["runners"] == 3


class TestConfigureLogging:
    def test_configure_and_log(self, capsys):
        configure_logging(level="DEBUG", format="json", force=True)
        assert is_configured()
        get_logger("spine_ci.test").info("test.event", answer=42)
        err = capsys.readouterr().err
        assert "test.event" in err
        assert "42" in err

    def test_level_filters_debug(self, capsys):
        configure_logging(level="WARNING", format="console", force=True)
        get_logger("spine_ci.test").debug("hidden.event")
        assert "hidden.event" not in capsys.readouterr().err

    def test_env_level(self, monkeypatch, capsys):
        monkeypatch.setenv("SPINE_CI_LOG_LEVEL", "ERROR")
        configure_logging(force=True)
        get_logger("spine_ci.test").warning("quiet.event")
        assert "quiet.event" not in capsys.readouterr().err
