"""Database commands — nodepipe init-db."""

from __future__ import annotations

import click

from nodepipe.cli.main import console
from nodepipe.config import get_settings
from nodepipe.db import init_database


@click.command("init-db")
def init_db():
    """Create the nodepipe database and tables."""
    settings = get_settings()
    init_database(settings)
    console.print(f"[green]Initialized[/green] {settings.db_url}")
