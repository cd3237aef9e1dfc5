"""Commands, responses and request parsing.

Every message is a keyword followed by arguments separated by ``:`` or
whitespace, terminated by a newline::

    register:localhost:8900
    DISPATCH abc123
    runtest:abc123
    ping

Keywords are case-insensitive and several have aliases (``COMMIT`` for
``DISPATCH``, ``TEST`` for ``RUNTEST``). ``RESULTS`` carries a binary
payload and is length-framed; see :mod:`spine_ci.protocol.framing`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from spine_ci.core.errors import MalformedRequestError


class Command(str, Enum):
    """Canonical protocol commands."""

    REGISTER = "register"
    STATUS = "status"
    PING = "ping"
    DISPATCH = "dispatch"
    RUNTEST = "runtest"
    RESULTS = "results"


_ALIASES: dict[str, Command] = {
    "commit": Command.DISPATCH,
    "test": Command.RUNTEST,
}


class Response:
    """Response lines. Anything else a peer sends back is treated as a refusal."""

    OK = "OK"
    ACK = "ACK"
    PONG = "PONG"
    BUSY = "BUSY"

    INVALID = "Invalid command"
    INVALID_REGISTER = "Invalid register command"
    INVALID_DISPATCH = "Invalid dispatch command"
    INVALID_RUNTEST = "Invalid runtest command"
    INVALID_RESULTS = "Invalid results command"
    NO_RUNNERS = "No runners are registered"
    INTERNAL_ERROR = "Internal error"


@dataclass(frozen=True)
class Request:
    """A parsed inbound message."""

    command: Command
    args: tuple[str, ...] = ()
    payload: bytes | None = field(default=None, repr=False)

    def arg(self, index: int, reply: str = Response.INVALID) -> str:
        """Return argument ``index`` or raise a malformed-request error."""
        try:
            value = self.args[index]
        except IndexError:
            raise MalformedRequestError(
                f"{self.command.value} expects at least {index + 1} argument(s)", reply=reply
            ).with_context(command=self.command.value) from None
        if not value:
            raise MalformedRequestError(f"{self.command.value} has an empty argument", reply=reply)
        return value


_LINE_RE = re.compile(r"^\s*(?P<keyword>[A-Za-z]+)(?:[:\s]+(?P<rest>.*?))?\s*$", re.DOTALL)
_ARG_SPLIT_RE = re.compile(r"[:\s]+")


def resolve_keyword(keyword: str) -> Command:
    """Map a keyword (any case, aliases allowed) to its command."""
    lowered = keyword.lower()
    if lowered in _ALIASES:
        return _ALIASES[lowered]
    try:
        return Command(lowered)
    except ValueError:
        raise MalformedRequestError(f"unknown command {keyword!r}").with_context(command=keyword) from None


def parse_request(line: str) -> Request:
    """Parse a single newline-terminated request (every command but RESULTS).

    Raises:
        MalformedRequestError: unknown keyword or unparseable line
    """
    match = _LINE_RE.match(line)
    if match is None:
        raise MalformedRequestError(f"unparseable request {line[:80]!r}")
    command = resolve_keyword(match.group("keyword"))
    rest = match.group("rest") or ""
    args = tuple(a for a in _ARG_SPLIT_RE.split(rest.strip()) if a) if rest.strip() else ()
    return Request(command=command, args=args)


def format_request(command: Command, *args: str | int) -> bytes:
    """Encode a newline-terminated request: ``command:arg1:arg2\\n``."""
    parts = [command.value, *(str(a) for a in args)]
    return (":".join(parts) + "\n").encode("utf-8")


def format_results(commit_id: str, payload: bytes | str) -> bytes:
    """Encode a length-prefixed results message: ``results:<id>:<len>:<payload>``."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    header = f"{Command.RESULTS.value}:{commit_id}:{len(payload)}:".encode()
    return header + payload
