"""Pipeline commands — create-node, connect, ingest, process, status, requeue-errors."""

from __future__ import annotations

import json

import click
from rich import box
from rich.table import Table

from nodepipe.build.driver import PipelineDriver
from nodepipe.build.entry_store import EntryStore
from nodepipe.cli.main import console, handle_errors, status_style
from nodepipe.config import get_settings
from nodepipe.core.errors import ValidationError
from nodepipe.core.logging import PipelineLogger, Verbosity
from nodepipe.core.models import NodeType
from nodepipe.db import get_session, get_session_factory, init_database
from nodepipe.llm.providers import ProviderRegistry
from nodepipe.services import ingest as ingest_service
from nodepipe.services import nodes as node_service


def _parse_config(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        config = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"--config is not valid JSON: {e}") from e
    if not isinstance(config, dict):
        raise ValidationError("--config must be a JSON object")
    return config


@click.command("create-node")
@click.argument("node_type", type=click.Choice([t.value for t in NodeType]))
@click.option("--project", "project_id", default="default", help="Project the node belongs to")
@click.option("--name", default="", help="Display name")
@click.option("--config", "config_json", default=None, help="Node config as a JSON object")
@click.option("--parent", "parents", multiple=True, help="Upstream node id (repeatable)")
@handle_errors
def create_node(node_type: str, project_id: str, name: str, config_json: str | None, parents: tuple[str, ...]):
    """Create a pipeline node and print its id."""
    settings = get_settings()
    init_database(settings)
    with get_session(settings) as session:
        node = node_service.create_node(
            session, project_id, NodeType(node_type), name=name, config=_parse_config(config_json)
        )
        for parent_id in parents:
            node_service.connect_nodes(session, parent_id, node.id)
        node_id = node.id
    console.print(node_id)


@click.command()
@click.argument("parent_id")
@click.argument("child_id")
@handle_errors
def connect(parent_id: str, child_id: str):
    """Add an edge from PARENT_ID to CHILD_ID."""
    with get_session() as session:
        node_service.connect_nodes(session, parent_id, child_id)
    console.print(f"[green]Connected[/green] {parent_id} -> {child_id}")


@click.command()
@click.argument("node_id")
@click.argument("file", type=click.File("r"))
@handle_errors
def ingest(node_id: str, file):
    """Load newline-delimited JSON records from FILE into an Archive node."""
    with get_session() as session:
        result = ingest_service.ingest_jsonl(session, node_id, file)
    console.print(
        f"[green]Ingested[/green] {result.total} records "
        f"({result.created} new, {result.updated} updated, {result.unchanged} unchanged)"
    )


@click.command()
@click.argument("node_id")
@click.option("--invalidate", is_flag=True, default=False, help="Reprocess every entry of the node")
@click.option("--verbose", "-v", count=True, help="Verbosity level: -v per-node, -vv per-entry")
@handle_errors
def process(node_id: str, invalidate: bool, verbose: int):
    """Sweep NODE_ID and everything downstream of it."""
    settings = get_settings()
    verbosity = Verbosity(min(max(verbose, settings.log_verbosity), Verbosity.DEBUG))
    driver = PipelineDriver(
        get_session_factory(settings),
        providers=ProviderRegistry(default_provider=settings.default_provider),
        logger_factory=lambda: PipelineLogger(
            verbosity=verbosity, logs_dir=settings.logs_dir, console=console
        ),
        read_batch_size=settings.read_batch_size,
    )
    result = driver.process(node_id, invalidate_data=invalidate)

    table = Table(box=box.ROUNDED, title=f"Sweep from {node_id}")
    table.add_column("Node", style="bold")
    table.add_column("Type")
    table.add_column("Cached", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Deferred", justify="right")
    table.add_column("Model calls", justify="right")
    for nid in result.order:
        stats = result.run_log["nodes"].get(nid, {})
        table.add_row(
            nid,
            stats.get("node_type", ""),
            str(stats.get("cache_hits", 0) + stats.get("skipped", 0)),
            str(stats.get("processed", 0)),
            f"[red]{stats['errors']}[/red]" if stats.get("errors") else "0",
            str(stats.get("deferred", 0)),
            str(stats.get("model_calls", 0)),
        )
    console.print(table)
    console.print(f"[dim]{result.total_time:.1f}s[/dim]")


@click.command()
@click.argument("node_id")
@handle_errors
def status(node_id: str):
    """Show entry counts by status for NODE_ID."""
    with get_session() as session:
        node = node_service.get_node(session, node_id)
        node_type, name, node_hash = node.type.value, node.name, node.hash

    counts = EntryStore(get_session_factory()).status_counts(node_id)
    table = Table(box=box.ROUNDED, title=f"{name or node_id} ({node_type})")
    table.add_column("Status", style="bold")
    table.add_column("Entries", justify="right")
    for entry_status, count in counts.items():
        table.add_row(f"[{status_style(entry_status.value)}]{entry_status.value}[/]", str(count))
    console.print(table)
    console.print(f"[dim]hash: {node_hash or 'not computed'}[/dim]")


@click.command("requeue-errors")
@click.argument("node_id")
@handle_errors
def requeue_errors(node_id: str):
    """Move ERROR entries of NODE_ID back to PENDING."""
    with get_session() as session:
        node_service.get_node(session, node_id)
    count = EntryStore(get_session_factory()).requeue_errors(node_id)
    console.print(f"Requeued {count} entries; run [bold]nodepipe process {node_id}[/bold] to retry them")
