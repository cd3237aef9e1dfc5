"""
Tests for the spine-ci CLI.

Commands are invoked in-process with Typer's CliRunner; peers are FakePeer
servers on ephemeral ports.
"""

import pytest
from typer.testing import CliRunner

from spine_ci import __version__
from spine_ci.cli import app
from spine_ci.protocol.commands import Command, Response
from tests._support.peers import LOCALHOST, free_port


@pytest.fixture
def cli():
    return CliRunner()


class TestRoot:
    def test_version(self, cli):
        result = cli.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"spine-ci {__version__}" in result.output

    def test_help_lists_commands(self, cli):
        result = cli.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("dispatcher", "runner", "observer", "submit", "ping"):
            assert command in result.output


class TestSubmit:
    def test_queued(self, cli, fake_peer):
        dispatcher = fake_peer(Response.OK)
        result = cli.invoke(app, ["submit", "abc123", "--dispatcher", dispatcher.address])

        assert result.exit_code == 0
        assert "Queued" in result.output
        assert [r.args for r in dispatcher.received(Command.DISPATCH)] == [("abc123",)]

    def test_no_runners_still_queued(self, cli, fake_peer):
        dispatcher = fake_peer(Response.NO_RUNNERS)
        result = cli.invoke(app, ["submit", "abc123", "-d", dispatcher.address])

        assert result.exit_code == 0
        assert "No runners are registered" in result.output

    def test_rejected(self, cli, fake_peer):
        dispatcher = fake_peer(Response.INVALID_DISPATCH)
        result = cli.invoke(app, ["submit", "abc123", "-d", dispatcher.address])

        assert result.exit_code == 1

    def test_dispatcher_unreachable(self, cli):
        result = cli.invoke(app, ["submit", "abc123", "-d", f"{LOCALHOST}:{free_port()}", "--timeout", "1"])
        assert result.exit_code == 1

    def test_bad_address(self, cli):
        result = cli.invoke(app, ["submit", "abc123", "-d", "host:notaport"])
        assert result.exit_code == 2


class TestPing:
    def test_runner_answers_pong(self, cli, fake_peer):
        peer = fake_peer(Response.PONG)
        result = cli.invoke(app, ["ping", peer.address])

        assert result.exit_code == 0
        assert "PONG" in result.output
        assert len(peer.received(Command.PING)) == 1

    def test_nothing_listening(self, cli):
        result = cli.invoke(app, ["ping", f"{LOCALHOST}:{free_port()}"])
        assert result.exit_code == 1


class TestLongRunningCommands:
    def test_runner_exits_when_registration_fails(self, cli, tmp_path):
        result = cli.invoke(
            app,
            [
                "runner",
                "--host", LOCALHOST,
                "--port", str(free_port()),
                "--dispatcher", f"{LOCALHOST}:{free_port()}",
                "--repo", str(tmp_path),
            ],
        )
        assert result.exit_code == 1

    def test_runner_rejects_bad_dispatcher_address(self, cli):
        result = cli.invoke(app, ["runner", "--dispatcher", "nohost"])
        assert result.exit_code == 1

    def test_dispatcher_exits_when_port_taken(self, cli, fake_peer, tmp_path):
        occupied = fake_peer("OK")
        result = cli.invoke(
            app,
            [
                "dispatcher",
                "--host", LOCALHOST,
                "--port", str(occupied.port),
                "--results-dir", str(tmp_path / "results"),
            ],
        )
        assert result.exit_code == 1

    def test_observer_requires_existing_repo(self, cli, tmp_path):
        result = cli.invoke(app, ["observer", "--repo", str(tmp_path / "missing")])
        assert result.exit_code == 1
