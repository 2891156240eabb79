"""Nodepipe CLI — main entry point and shared utilities."""

from __future__ import annotations

import sys
from collections.abc import Callable
from functools import wraps
from typing import Any

import click
from rich.console import Console

from nodepipe.core.errors import NodepipeError

console = Console()

# Color per entry / cell status
STATUS_COLORS = {
    "PENDING": "yellow",
    "PROCESSING": "blue",
    "IN_PROGRESS": "blue",
    "PROCESSED": "green",
    "COMPLETE": "green",
    "ERROR": "red",
}


def status_style(status: str) -> str:
    """Return Rich style string for an entry or cell status."""
    return STATUS_COLORS.get(status, "white")


def handle_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Print nodepipe errors in red and exit 1 instead of dumping a traceback."""

    @wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except NodepipeError as e:
            console.print(f"[red]Error ({e.status_code}):[/red] {e}")
            sys.exit(1)

    return wrapper


@click.group()
def main():
    """Nodepipe — incremental LLM data pipelines."""
    pass


def cli():
    """Entrypoint that loads .env before running the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    main()


# Import subcommand modules to register commands
from nodepipe.cli.cell_commands import query_cell  # noqa: E402
from nodepipe.cli.db_commands import init_db  # noqa: E402
from nodepipe.cli.node_commands import (  # noqa: E402
    connect,
    create_node,
    ingest,
    process,
    requeue_errors,
    status,
)

# Register commands
main.add_command(init_db)
main.add_command(create_node)
main.add_command(connect)
main.add_command(ingest)
main.add_command(process)
main.add_command(status)
main.add_command(requeue_errors)
main.add_command(query_cell)
