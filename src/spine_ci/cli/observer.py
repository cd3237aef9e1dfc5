"""
CLI: ``spine-ci observer``: watch a repository and notify the dispatcher.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError

from spine_ci.cli.utils import console, fail


def observer(
    repo: Path = typer.Option(..., "--repo", help="Working copy to watch"),
    dispatcher: str | None = typer.Option(  # noqa: UP007
        None, "--dispatcher", "-d", help="Dispatcher address host:port [default: localhost:8888]"
    ),
    interval: float | None = typer.Option(  # noqa: UP007
        None, "--interval", "-i", help="Seconds between HEAD checks [default: 5]"
    ),
    pull: bool = typer.Option(False, "--pull", help="Run 'git pull' before each check"),
) -> None:
    """Poll a repository's HEAD and send new commits to the dispatcher.

    Example::

        spine-ci observer --repo ./clone --dispatcher localhost:8888 --interval 5
    """
    from spine_ci.core.settings import ObserverSettings
    from spine_ci.observer import RepositoryObserver

    if not repo.is_dir():
        fail(f"repository {repo} does not exist")

    overrides = {"repo_path": repo, "dispatcher": dispatcher, "poll_interval": interval}
    try:
        settings = ObserverSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        fail(f"invalid observer settings: {e}")

    console.print(
        f"[bold green]Watching {settings.repo_path}[/bold green] → {settings.dispatcher} "
        f"(every {settings.poll_interval}s)"
    )
    try:
        RepositoryObserver(settings, pull=pull).serve_forever()
    except KeyboardInterrupt:
        console.print("\n[yellow]Observer stopped by user[/yellow]")
