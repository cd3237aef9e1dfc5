"""Tests for spine_ci.protocol.framing: line requests and length-framed results."""

import io

import pytest

from spine_ci.core.errors import MalformedRequestError, PeerUnavailableError
from spine_ci.protocol.commands import Command, Response
from spine_ci.protocol.framing import encode_response, read_exact, read_request, read_response


class _ChunkedReader:
    """File-like reader that hands out at most ``chunk`` bytes per call."""

    def __init__(self, data: bytes, chunk: int):
        self._buffer = io.BytesIO(data)
        self._chunk = chunk

    def read(self, size: int = -1) -> bytes:
        limit = self._chunk if size < 0 else min(size, self._chunk)
        return self._buffer.read(limit)

    def readline(self, size: int = -1) -> bytes:
        return self._buffer.readline(size)


class TestReadRequest:
    def test_plain_request(self):
        request = read_request(io.BytesIO(b"dispatch:abc123\n"))
        assert request.command is Command.DISPATCH
        assert request.args == ("abc123",)
        assert request.payload is None

    def test_empty_stream_returns_none(self):
        assert read_request(io.BytesIO(b"")) is None

    def test_results_payload(self):
        request = read_request(io.BytesIO(b"results:abc:12:Tests passed"))
        assert request.command is Command.RESULTS
        assert request.args == ("abc", "12")
        assert request.payload == b"Tests passed"

    def test_results_payload_with_newlines(self):
        payload = b"line one\nline two\n\nline four\n"
        data = b"RESULTS:abc:%d:" % len(payload) + payload
        request = read_request(io.BytesIO(data))
        assert request.payload == payload

    def test_results_payload_across_many_reads(self):
        """A payload larger than one read is assembled from several."""
        payload = bytes(range(256)) * 40
        data = b"results:abc:%d:" % len(payload) + payload
        request = read_request(_ChunkedReader(data, chunk=100))
        assert request.payload == payload

    def test_results_ignores_trailing_bytes(self):
        request = read_request(io.BytesIO(b"results:abc:4:passEXTRA"))
        assert request.payload == b"pass"

    @pytest.mark.parametrize(
        "data",
        [b"RESULTS  c4  11 hello world", b"results::c4::11:hello world", b"results: c4\t11 hello world"],
    )
    def test_results_header_with_repeated_separators(self, data):
        request = read_request(io.BytesIO(data))
        assert request.args == ("c4", "11")
        assert request.payload == b"hello world"

    def test_results_payload_starts_after_one_separator(self):
        request = read_request(io.BytesIO(b"results:c4:6::colon"))
        assert request.payload == b":colon"

    def test_results_empty_payload(self):
        request = read_request(io.BytesIO(b"results:abc:0:"))
        assert request.payload == b""

    def test_truncated_payload_is_malformed(self):
        with pytest.raises(MalformedRequestError) as exc_info:
            read_request(io.BytesIO(b"results:abc:100:short"))
        assert exc_info.value.reply == Response.INVALID_RESULTS

    @pytest.mark.parametrize(
        "data",
        [b"results\n", b"results:abc\n", b"results:abc:notanumber:xyz", b"results::5:hello"],
    )
    def test_bad_results_header(self, data):
        with pytest.raises(MalformedRequestError) as exc_info:
            read_request(io.BytesIO(data))
        assert exc_info.value.reply == Response.INVALID_RESULTS

    def test_oversized_payload_rejected(self):
        with pytest.raises(MalformedRequestError):
            read_request(io.BytesIO(b"results:abc:999999999999:x"))


class TestReadExact:
    def test_initial_bytes_count(self):
        assert read_exact(io.BytesIO(b"def"), 6, initial=b"abc") == b"abcdef"

    def test_initial_longer_than_length(self):
        assert read_exact(io.BytesIO(b""), 2, initial=b"abcdef") == b"ab"


class TestResponses:
    def test_read_response_strips_line(self):
        assert read_response(io.BytesIO(b"OK\r\n")) == "OK"

    def test_read_response_on_closed_stream(self):
        with pytest.raises(PeerUnavailableError):
            read_response(io.BytesIO(b""))

    def test_encode_response(self):
        assert encode_response("PONG") == b"PONG\n"
        assert encode_response("OK\n") == b"OK\n"
