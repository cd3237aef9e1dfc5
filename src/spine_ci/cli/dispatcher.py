"""
CLI: ``spine-ci dispatcher``: run the dispatcher service.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError

from spine_ci.cli.utils import console, fail, print_kv
from spine_ci.core.errors import FatalError


def dispatcher(
    host: str | None = typer.Option(None, "--host", help="Bind address [default: localhost]"),  # noqa: UP007
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port [default: 8888]"),  # noqa: UP007
    results_dir: Path | None = typer.Option(  # noqa: UP007
        None, "--results-dir", "-r", help="Directory for result reports [default: test_results]"
    ),
) -> None:
    """Start the dispatcher and serve until interrupted.

    Example::

        spine-ci dispatcher --port 8888 --results-dir test_results
    """
    from spine_ci.core.settings import DispatcherSettings
    from spine_ci.dispatcher import DispatcherService

    overrides = {"host": host, "port": port, "results_dir": results_dir}
    try:
        settings = DispatcherSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        fail(f"invalid dispatcher settings: {e}")

    console.print(
        f"[bold green]Starting spine-ci dispatcher[/bold green] on {settings.host}:{settings.port} "
        f"(results → {settings.results_dir})"
    )
    service = DispatcherService(settings)
    try:
        service.serve_forever()
    except FatalError as e:
        fail(e)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dispatcher stopped by user[/yellow]")
    print_kv("Dispatcher totals", service.stats.to_dict())
