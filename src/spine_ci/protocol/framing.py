"""Message framing over a byte stream.

Plain requests and all responses are single lines. ``RESULTS`` is the only
message with a body::

    results:<commit_id>:<byte_length>:<payload bytes ...>

The payload may contain newlines or arbitrary bytes, so the receiver reads
the header, then keeps reading until ``byte_length`` payload bytes have been
accumulated. A payload larger than one read (or one TCP segment) is
assembled across as many reads as it takes; a peer that closes the
connection early produces a malformed-request error.
"""

from __future__ import annotations

import re
from typing import BinaryIO

from spine_ci.core.errors import MalformedRequestError, PeerUnavailableError
from spine_ci.protocol.commands import Command, Request, Response, parse_request

MAX_LINE = 64 * 1024
MAX_PAYLOAD = 64 * 1024 * 1024
READ_CHUNK = 4096

_RESULTS_HEADER_RE = re.compile(
    rb"^\s*results[:\s]+(?P<commit_id>[^:\s]+)[:\s]+(?P<length>\d+)(?:[:\s]|$)",
    re.IGNORECASE,
)
_RESULTS_KEYWORD_RE = re.compile(rb"^\s*results(?:[:\s]|$)", re.IGNORECASE)
# A complete results header, up to and including the single separator after the length
_RESULTS_PREFIX_RE = re.compile(rb"^\s*results[:\s]+[^:\s]+[:\s]+\d+[:\s]$", re.IGNORECASE)


def read_exact(rfile: BinaryIO, length: int, initial: bytes = b"") -> bytes:
    """Read until ``length`` bytes (including ``initial``) have arrived.

    Raises:
        MalformedRequestError: the stream ended before ``length`` bytes
    """
    chunks = [initial[:length]]
    received = len(chunks[0])
    while received < length:
        chunk = rfile.read(min(READ_CHUNK, length - received))
        if not chunk:
            raise MalformedRequestError(
                f"connection closed after {received} of {length} payload bytes",
                reply=Response.INVALID_RESULTS,
            )
        chunks.append(chunk)
        received += len(chunk)
    return b"".join(chunks)


def read_head(rfile: BinaryIO) -> bytes:
    """Read the first line of a request.

    Stops at a newline, at end of stream, after ``MAX_LINE`` bytes, or as
    soon as a complete results header has arrived. A results payload need
    not contain a newline, so the header cannot be read with ``readline``.
    """
    buffer = bytearray()
    while len(buffer) < MAX_LINE:
        byte = rfile.read(1)
        if not byte:
            break
        buffer += byte
        if byte == b"\n":
            break
        if byte in b": \t" and _RESULTS_PREFIX_RE.match(buffer):
            break
    return bytes(buffer)


def read_request(rfile: BinaryIO) -> Request | None:
    """Read one request from ``rfile``.

    Returns None when the peer closed the connection without sending
    anything.

    Raises:
        MalformedRequestError: unparseable command, bad results header,
            oversized or truncated payload
    """
    line = read_head(rfile)
    if not line:
        return None

    if _RESULTS_KEYWORD_RE.match(line):
        return _read_results(rfile, line)

    return parse_request(line.decode("utf-8", errors="replace"))


def _read_results(rfile: BinaryIO, first_line: bytes) -> Request:
    match = _RESULTS_HEADER_RE.match(first_line)
    if match is None:
        raise MalformedRequestError("bad results header", reply=Response.INVALID_RESULTS).with_context(
            command=Command.RESULTS.value
        )

    commit_id = match.group("commit_id").decode("utf-8", errors="replace")
    length = int(match.group("length"))
    if length > MAX_PAYLOAD:
        raise MalformedRequestError(
            f"results payload of {length} bytes exceeds {MAX_PAYLOAD}", reply=Response.INVALID_RESULTS
        ).with_context(commit_id=commit_id)

    # Whatever followed the header on the first line is the start of the payload.
    already = first_line[match.end():]
    payload = read_exact(rfile, length, initial=already)
    return Request(command=Command.RESULTS, args=(commit_id, str(length)), payload=payload)


def read_response(rfile: BinaryIO) -> str:
    """Read a single response line.

    Raises:
        PeerUnavailableError: the peer closed the connection without answering
    """
    line = rfile.readline(MAX_LINE)
    if not line:
        raise PeerUnavailableError("connection closed without a response")
    return line.decode("utf-8", errors="replace").strip()


def encode_response(reply: str) -> bytes:
    return (reply.rstrip("\n") + "\n").encode("utf-8")
