"""Wire protocol shared by the dispatcher, runners and the observer.

- ``commands`` — command keywords, response lines, request parsing/encoding
- ``framing``  — line and length-prefixed framing over a byte stream
- ``client``   — transactional request/response client
- ``server``   — threaded one-request-per-connection server
"""

from spine_ci.protocol.client import communicate, send_request
from spine_ci.protocol.commands import (
    Command,
    Request,
    Response,
    format_request,
    format_results,
    parse_request,
)
from spine_ci.protocol.framing import read_request, read_response
from spine_ci.protocol.server import ProtocolServer, bind_first_free

__all__ = [
    "Command",
    "Request",
    "Response",
    "format_request",
    "format_results",
    "parse_request",
    "read_request",
    "read_response",
    "send_request",
    "communicate",
    "ProtocolServer",
    "bind_first_free",
]
