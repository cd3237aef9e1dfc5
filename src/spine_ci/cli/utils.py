"""
CLI utility helpers: consoles, address parsing and fatal-error exits.
"""

from __future__ import annotations

from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from spine_ci.core.errors import FatalError, SpineCIError
from spine_ci.core.settings import parse_address

console = Console()
err_console = Console(stderr=True)


def address_option(value: str, default_port: int = 8888) -> tuple[str, int]:
    """Parse ``host:port`` for an option, exiting with a usage error when invalid."""
    try:
        return parse_address(value, default_port=default_port)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


def fail(error: SpineCIError | str, code: int = 1) -> None:
    """Print an error and exit with ``code``."""
    if isinstance(error, FatalError):
        err_console.print(f"[bold red]Fatal[/bold red] ({error.__class__.__name__}): {error.message}")
    elif isinstance(error, SpineCIError):
        err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    else:
        err_console.print(f"[bold red]Error[/bold red]: {error}")
    raise typer.Exit(code=code)


def print_kv(title: str, data: dict[str, Any]) -> None:
    """Render a flat mapping as a two-column table."""
    table = Table(title=title, show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)
