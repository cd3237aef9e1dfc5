"""
CLI: ``spine-ci submit`` and ``spine-ci ping``: one-shot requests to a peer.
"""

from __future__ import annotations

import typer

from spine_ci.cli.utils import address_option, console, err_console, fail
from spine_ci.core.errors import TransientError
from spine_ci.protocol.client import send_request
from spine_ci.protocol.commands import Command, Response, format_request


def submit(
    commit: str = typer.Argument(..., help="Commit id to test"),
    dispatcher: str = typer.Option("localhost:8888", "--dispatcher", "-d", help="Dispatcher address host:port"),
    timeout: float = typer.Option(5.0, "--timeout", help="Seconds to wait for the reply"),
) -> None:
    """Notify the dispatcher of a commit, as the observer would.

    Example::

        spine-ci submit 3f2a9c1 --dispatcher localhost:8888
    """
    host, port = address_option(dispatcher)
    try:
        reply = send_request(host, port, format_request(Command.DISPATCH, commit), timeout=timeout)
    except TransientError as e:
        fail(e)

    if reply == Response.OK:
        console.print(f"[green]Queued[/green] {commit}")
    elif reply == Response.NO_RUNNERS:
        console.print(f"[yellow]Queued[/yellow] {commit}: {reply}")
    else:
        err_console.print(f"[red]Rejected[/red] {commit}: {reply}")
        raise typer.Exit(code=1)


def ping(
    address: str = typer.Argument("localhost:8888", help="Dispatcher or runner address host:port"),
    timeout: float = typer.Option(3.0, "--timeout", help="Seconds to wait for the reply"),
) -> None:
    """Send PING and print the reply (OK from a dispatcher, PONG from a runner)."""
    host, port = address_option(address)
    try:
        reply = send_request(host, port, format_request(Command.PING), timeout=timeout)
    except TransientError as e:
        fail(e)
    console.print(f"{host}:{port} → [bold]{reply}[/bold]")
