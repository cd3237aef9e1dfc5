"""Transactional client: one connection, one request, one response.

Every outbound call in spine-ci (dispatcher → runner ``RUNTEST``/``PING``,
runner → dispatcher ``REGISTER``/``RESULTS``/``STATUS``, observer →
dispatcher ``DISPATCH``) goes through :func:`send_request`, which bounds
the connect and the read by an explicit timeout.
"""

from __future__ import annotations

import socket

from spine_ci.core.errors import PeerTimeoutError, PeerUnavailableError, TransientError
from spine_ci.framework.logging import get_logger
from spine_ci.protocol.framing import read_response

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 5.0


def send_request(host: str, port: int, message: bytes | str, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Send ``message`` to ``host:port`` and return the stripped response line.

    Raises:
        PeerTimeoutError: connect or read exceeded ``timeout``
        PeerUnavailableError: refused, reset, unreachable, or closed without a reply
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    if not message.endswith(b"\n") and not message[:8].lower().startswith(b"results"):
        message += b"\n"

    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(message)
            with sock.makefile("rb") as rfile:
                return read_response(rfile)
    except PeerUnavailableError as e:
        raise e.with_context(host=host, port=port)
    except TimeoutError as e:
        # socket.timeout is an alias of TimeoutError
        raise PeerTimeoutError(f"{host}:{port} did not answer within {timeout}s", cause=e).with_context(
            host=host, port=port
        ) from e
    except OSError as e:
        raise PeerUnavailableError(f"{host}:{port} unreachable: {e}", cause=e).with_context(
            host=host, port=port
        ) from e


def communicate(host: str, port: int, message: bytes | str, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    """Like :func:`send_request` but returns None instead of raising on peer errors."""
    try:
        return send_request(host, port, message, timeout=timeout)
    except TransientError as e:
        logger.debug("client.request_failed", peer=f"{host}:{port}", error=e.message)
        return None
