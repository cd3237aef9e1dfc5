"""
CLI: ``spine-ci runner``: run a test runner agent.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError

from spine_ci.cli.utils import console, fail, print_kv
from spine_ci.core.errors import FatalError


def runner(
    host: str | None = typer.Option(None, "--host", help="Bind address [default: localhost]"),  # noqa: UP007
    port: int | None = typer.Option(  # noqa: UP007
        None, "--port", "-p", help="Bind port; 0 picks the first free port in 8900-9000"
    ),
    dispatcher: str | None = typer.Option(  # noqa: UP007
        None, "--dispatcher", "-d", help="Dispatcher address host:port [default: localhost:8888]"
    ),
    repo: Path | None = typer.Option(None, "--repo", help="Working copy to test in [default: .]"),  # noqa: UP007
    test_command: str | None = typer.Option(  # noqa: UP007
        None, "--test-command", "-t", help="Command run after checkout [default: python -m pytest -q]"
    ),
) -> None:
    """Start a runner, register with the dispatcher and serve until interrupted.

    Exits with code 1 if the listening port cannot be bound or the
    dispatcher rejects the registration.

    Example::

        spine-ci runner --dispatcher localhost:8888 --repo ./clone
    """
    from spine_ci.core.settings import RunnerSettings
    from spine_ci.runner import RunnerAgent

    overrides = {
        "host": host,
        "port": port,
        "dispatcher": dispatcher,
        "repo_path": repo,
        "test_command": test_command,
    }
    try:
        settings = RunnerSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        fail(f"invalid runner settings: {e}")

    agent = RunnerAgent(settings)
    try:
        agent.start()
    except FatalError as e:
        agent.stop()
        fail(e)

    console.print(
        f"[bold green]Runner {agent.runner_id} registered[/bold green] with {settings.dispatcher} "
        f"(repo={settings.repo_path})"
    )
    try:
        agent.serve_forever()
    except KeyboardInterrupt:
        console.print("\n[yellow]Runner stopped by user[/yellow]")
    print_kv("Runner totals", agent.stats.to_dict())

    if agent.dispatcher_lost:
        fail(f"dispatcher {settings.dispatcher} is gone; runner shut down")
