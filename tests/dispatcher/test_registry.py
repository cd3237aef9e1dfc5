"""Tests for spine_ci.dispatcher.registry.RunnerRegistry."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from spine_ci.core.errors import MalformedRequestError
from spine_ci.dispatcher.models import CommitState, RunnerStatus
from spine_ci.protocol.commands import Response


class TestRegister:
    def test_register_adds_idle_runner(self, registry):
        runner = registry.register("localhost", 8900)
        assert runner.runner_id == "localhost:8900"
        assert runner.status is RunnerStatus.IDLE
        assert "localhost:8900" in registry
        assert len(registry) == 1

    def test_port_as_string(self, registry):
        assert registry.register("localhost", "8901").port == 8901

    @pytest.mark.parametrize("host, port", [("", 8900), ("  ", 8900), ("h", "abc"), ("h", 0), ("h", 70000)])
    def test_malformed(self, registry, host, port):
        with pytest.raises(MalformedRequestError) as exc_info:
            registry.register(host, port)
        assert exc_info.value.reply == Response.INVALID_REGISTER
        assert len(registry) == 0

    def test_reregister_resets_and_requeues(self, registry, queue, stats):
        registry.register("h", 1)
        queue.submit("abc")
        assert registry.assign("abc", "h:1")

        runner = registry.register("h", 1)

        assert runner.status is RunnerStatus.IDLE
        assert len(registry) == 1
        assert queue.state("abc") is CommitState.PENDING
        assert stats.requeued == 1

    def test_snapshot_in_registration_order(self, registry):
        for port in (3, 1, 2):
            registry.register("h", port)
        assert [r.port for r in registry.snapshot()] == [3, 1, 2]
        assert [r.port for r in registry] == [3, 1, 2]

    def test_snapshot_is_a_copy(self, registry):
        registry.register("h", 1)
        snapshot = registry.snapshot()
        snapshot[0].status = RunnerStatus.UNREACHABLE
        registry.register("h", 2)
        assert registry.get("h:1").status is RunnerStatus.IDLE
        assert len(snapshot) == 1


class TestRemove:
    def test_remove_requeues_assigned_commit(self, registry, queue, stats):
        registry.register("h", 1)
        queue.submit("abc")
        registry.assign("abc", "h:1")

        assert registry.remove("h:1", reason="test") == ["abc"]

        assert "h:1" not in registry
        assert queue.state("abc") is CommitState.PENDING
        assert queue.assignments() == {}
        assert stats.evicted == 1

    def test_remove_twice_requeues_once(self, registry, queue):
        registry.register("h", 1)
        queue.submit("abc")
        registry.assign("abc", "h:1")
        assert registry.remove("h:1") == ["abc"]
        assert registry.remove("h:1") == []
        assert queue.get("abc").requeues == 1

    def test_remove_idle_runner(self, registry):
        registry.register("h", 1)
        assert registry.remove("h:1") == []


class TestAssign:
    def test_assign_marks_busy(self, registry, queue):
        registry.register("h", 1)
        queue.submit("abc")
        assert registry.assign("abc", "h:1") is True
        assert registry.get("h:1").status is RunnerStatus.BUSY
        assert queue.assignment("abc") == "h:1"

    def test_assign_to_evicted_runner_fails(self, registry, queue):
        registry.register("h", 1)
        queue.submit("abc")
        registry.remove("h:1")
        assert registry.assign("abc", "h:1") is False
        assert queue.state("abc") is CommitState.PENDING

    def test_assign_completed_commit_fails(self, registry, queue):
        registry.register("h", 1)
        queue.submit("abc")
        queue.complete("abc")
        assert registry.assign("abc", "h:1") is False
        assert registry.get("h:1").status is RunnerStatus.IDLE

    def test_concurrent_assign_one_winner(self, registry, queue):
        for port in range(10):
            registry.register("h", port + 1)
        queue.submit("abc")

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda p: registry.assign("abc", f"h:{p + 1}"), range(10)))

        assert results.count(True) == 1
        assert len(queue.assignments()) == 1

    def test_assign_races_with_remove(self, registry, queue):
        """A commit never ends up dispatched to a runner that is no longer registered."""
        for i in range(50):
            registry.register("h", i + 1)
            queue.submit(f"c{i}")

        def assign(i):
            registry.assign(f"c{i}", f"h:{i + 1}")

        def remove(i):
            registry.remove(f"h:{i + 1}")

        threads = []
        for i in range(50):
            threads.append(threading.Thread(target=assign, args=(i,)))
            threads.append(threading.Thread(target=remove, args=(i,)))
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(registry) == 0
        assert queue.assignments() == {}
        assert len(queue.pending()) == 50


class TestStatus:
    def test_mark_busy_and_idle(self, registry):
        registry.register("h", 1)
        registry.mark_busy("h:1")
        assert registry.get("h:1").status is RunnerStatus.BUSY
        registry.mark_idle("h:1")
        assert registry.get("h:1").status is RunnerStatus.IDLE

    def test_unknown_runner_is_ignored(self, registry):
        registry.mark_busy("nope:1")
        registry.mark_idle("nope:1")
        registry.record_probe_success("nope:1")
        assert registry.record_probe_failure("nope:1", hard=True, max_failures=3) is False

    def test_soft_failures_evict_at_threshold(self, registry, queue):
        registry.register("h", 1)
        queue.submit("abc")
        registry.assign("abc", "h:1")

        assert registry.record_probe_failure("h:1", hard=False, max_failures=3) is False
        assert registry.get("h:1").status is RunnerStatus.UNREACHABLE
        assert registry.record_probe_failure("h:1", hard=False, max_failures=3) is False
        assert registry.record_probe_failure("h:1", hard=False, max_failures=3) is True

        assert "h:1" not in registry
        assert queue.state("abc") is CommitState.PENDING

    def test_success_resets_failures_and_status(self, registry, queue):
        registry.register("h", 1)
        queue.submit("abc")
        registry.assign("abc", "h:1")
        registry.record_probe_failure("h:1", hard=False, max_failures=3)
        registry.record_probe_failure("h:1", hard=False, max_failures=3)

        registry.record_probe_success("h:1")

        runner = registry.get("h:1")
        assert runner.probe_failures == 0
        assert runner.status is RunnerStatus.BUSY
        # Counter restarted: two more soft failures do not evict
        registry.record_probe_failure("h:1", hard=False, max_failures=3)
        registry.record_probe_failure("h:1", hard=False, max_failures=3)
        assert "h:1" in registry

    def test_success_restores_idle(self, registry):
        registry.register("h", 1)
        registry.record_probe_failure("h:1", hard=False, max_failures=3)
        registry.record_probe_success("h:1")
        assert registry.get("h:1").status is RunnerStatus.IDLE

    def test_hard_failure_evicts_immediately(self, registry):
        registry.register("h", 1)
        assert registry.record_probe_failure("h:1", hard=True, max_failures=3) is True
        assert len(registry) == 0

    def test_unreachable_not_overwritten_by_mark_idle(self, registry):
        registry.register("h", 1)
        registry.record_probe_failure("h:1", hard=False, max_failures=3)
        registry.mark_idle("h:1")
        assert registry.get("h:1").status is RunnerStatus.UNREACHABLE


class TestOneCommitPerRunner:
    def test_runner_holding_commit_cannot_take_another(self, registry, queue):
        registry.register("h", 1)
        queue.submit("c1")
        queue.submit("c2")
        assert registry.assign("c1", "h:1") is True
        assert registry.assign("c2", "h:1") is False
        assert queue.state("c2") is CommitState.PENDING
