"""Tests for the transactional client and the threaded protocol server."""

import socket
import threading
import time

import pytest

from spine_ci.core.errors import BindError, MalformedRequestError, PeerTimeoutError, PeerUnavailableError
from spine_ci.protocol.client import communicate, send_request
from spine_ci.protocol.commands import Command, Response, format_request, format_results
from spine_ci.protocol.server import ProtocolServer, bind_first_free
from tests._support.peers import LOCALHOST, free_port


def _echo_router(request):
    if request.command is Command.RESULTS:
        return f"{request.args[0]}:{len(request.payload)}"
    if request.command is Command.DISPATCH:
        return request.arg(0, Response.INVALID_DISPATCH)
    return Response.PONG


@pytest.fixture
def server():
    srv = ProtocolServer(LOCALHOST, 0, _echo_router, component="test", request_timeout=2.0)
    srv.start()
    yield srv
    srv.stop()


class TestSendRequest:
    def test_round_trip(self, server):
        host, port = server.address
        assert send_request(host, port, "ping") == "PONG"

    def test_appends_newline(self, server):
        host, port = server.address
        assert send_request(host, port, b"dispatch:abc") == "abc"

    def test_results_message(self, server):
        host, port = server.address
        assert send_request(host, port, format_results("abc", b"x" * 10_000)) == "abc:10000"

    def test_connection_refused(self):
        port = free_port()
        with pytest.raises(PeerUnavailableError) as exc_info:
            send_request(LOCALHOST, port, "ping", timeout=1.0)
        assert exc_info.value.context.port == port

    def test_timeout(self):
        """A peer that accepts but never answers times out."""
        with socket.socket() as listener:
            listener.bind((LOCALHOST, 0))
            listener.listen(1)
            port = listener.getsockname()[1]
            with pytest.raises(PeerTimeoutError):
                send_request(LOCALHOST, port, "ping", timeout=0.3)

    def test_communicate_swallows_peer_errors(self):
        assert communicate(LOCALHOST, free_port(), "ping", timeout=0.5) is None


class TestProtocolServer:
    def test_unknown_command_gets_invalid_reply(self, server):
        host, port = server.address
        assert send_request(host, port, "launch:rockets") == Response.INVALID

    def test_malformed_argument_gets_specific_reply(self, server):
        host, port = server.address
        assert send_request(host, port, "dispatch") == Response.INVALID_DISPATCH

    def test_router_exception_becomes_internal_error(self):
        def broken(request):
            raise RuntimeError("boom")

        srv = ProtocolServer(LOCALHOST, 0, broken)
        srv.start()
        try:
            host, port = srv.address
            assert send_request(host, port, "ping") == Response.INTERNAL_ERROR
            # The server keeps serving after a failed handler
            assert send_request(host, port, "ping") == Response.INTERNAL_ERROR
        finally:
            srv.stop()

    def test_results_payload_split_across_sends(self, server):
        """The receiver keeps reading until the declared length has arrived."""
        host, port = server.address
        payload = b"Tests passed for commit abc\n" * 200
        message = format_results("abc", payload)
        with socket.create_connection((host, port), timeout=2.0) as sock:
            for start in range(0, len(message), 700):
                sock.sendall(message[start : start + 700])
                time.sleep(0.01)
            reply = sock.makefile("rb").readline().decode().strip()
        assert reply == f"abc:{len(payload)}"

    def test_truncated_results_gets_invalid_reply(self, server):
        host, port = server.address
        with socket.create_connection((host, port), timeout=2.0) as sock:
            sock.sendall(b"results:abc:100:partial")
            sock.shutdown(socket.SHUT_WR)
            reply = sock.makefile("rb").readline().decode().strip()
        assert reply == Response.INVALID_RESULTS

    def test_concurrent_connections(self, server):
        host, port = server.address
        replies = []
        lock = threading.Lock()

        def call(i):
            reply = send_request(host, port, format_request(Command.DISPATCH, f"c{i}"))
            with lock:
                replies.append(reply)

        threads = [threading.Thread(target=call, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert sorted(replies) == sorted(f"c{i}" for i in range(20))

    def test_port_zero_reports_real_port(self, server):
        assert server.address[1] != 0

    def test_bind_conflict_raises_bind_error(self, server):
        host, port = server.address
        other = ProtocolServer(host, port, _echo_router)
        with pytest.raises(BindError):
            other.bind()

    def test_stop_is_idempotent(self):
        srv = ProtocolServer(LOCALHOST, 0, _echo_router)
        srv.start()
        srv.stop()
        srv.stop()


class TestBindFirstFree:
    def test_skips_ports_in_use(self, server):
        _, used = server.address
        spare = free_port()
        srv = bind_first_free(LOCALHOST, [used, spare], _echo_router)
        try:
            assert srv.address[1] == spare
        finally:
            srv.stop()

    def test_no_free_port(self, server):
        _, used = server.address
        with pytest.raises(BindError):
            bind_first_free(LOCALHOST, [used], _echo_router)


def test_malformed_request_error_default_reply():
    assert MalformedRequestError("x").reply == "Invalid command"
