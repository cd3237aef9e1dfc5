"""
Root Typer application for the spine-ci CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from spine_ci.framework.logging import configure_logging

app = Typer(
    name="spine-ci",
    help="spine-ci: dispatcher, runners and observer for a minimal CI fabric.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from spine_ci import __version__

        typer.echo(f"spine-ci {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(  # noqa: UP007
        None, "--log-level", "-l", help="DEBUG, INFO, WARNING or ERROR [env: SPINE_CI_LOG_LEVEL]"
    ),
    log_format: str | None = typer.Option(  # noqa: UP007
        None, "--log-format", help="console or json [env: SPINE_CI_LOG_FORMAT]"
    ),
) -> None:
    """spine-ci CLI: run the dispatcher, runners and observer."""
    configure_logging(level=log_level, format=log_format, force=True)


# ── Commands ─────────────────────────────────────────────────────────────

from spine_ci.cli.dispatcher import dispatcher  # noqa: E402
from spine_ci.cli.observer import observer  # noqa: E402
from spine_ci.cli.runner import runner  # noqa: E402
from spine_ci.cli.submit import ping, submit  # noqa: E402

app.command("dispatcher", help="Run the dispatcher service.")(dispatcher)
app.command("runner", help="Run a test runner agent.")(runner)
app.command("observer", help="Watch a repository for new commits.")(observer)
app.command("submit", help="Send a commit to the dispatcher.")(submit)
app.command("ping", help="Check that a dispatcher or runner answers.")(ping)
