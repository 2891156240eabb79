"""Completion commands — nodepipe query-cell."""

from __future__ import annotations

import sys

import click

from nodepipe.cli.main import console, handle_errors, status_style
from nodepipe.completions.engine import queue_query_model
from nodepipe.completions.streaming import PARTIAL, StreamBroadcaster, cell_channel
from nodepipe.config import get_settings
from nodepipe.core.errors import NotFoundError
from nodepipe.db import get_session, get_session_factory
from nodepipe.db.models import ScenarioVariantCell
from nodepipe.jobs.tasks import create_worker


@click.command("query-cell")
@click.argument("cell_id")
@click.option("--stream", is_flag=True, default=False, help="Print partial output as it arrives")
@handle_errors
def query_cell(cell_id: str, stream: bool):
    """Reset CELL_ID to PENDING and resolve it against its model provider."""
    settings = get_settings()
    session_factory = get_session_factory(settings)
    broadcaster = StreamBroadcaster()
    worker = create_worker(settings, session_factory, broadcaster=broadcaster)

    try:
        subscription = broadcaster.subscribe(cell_channel(cell_id)) if stream else None
        with get_session(settings) as session:
            if session.get(ScenarioVariantCell, cell_id) is None:
                raise NotFoundError(f"Cell {cell_id} not found")
            queue_query_model(session, worker.queue, cell_id, stream=stream)

        if subscription is not None:
            printed = 0
            for event in subscription:
                if event.kind != PARTIAL:
                    break
                content = event.data.get("content") or "" if isinstance(event.data, dict) else str(event.data)
                console.print(content[printed:], end="", markup=False, highlight=False)
                printed = len(content)
            console.print()
        worker.queue.wait_idle()
    finally:
        worker.close()

    with get_session(settings) as session:
        cell = session.get(ScenarioVariantCell, cell_id)
        cell_status = cell.retrieval_status.value
        code, error = cell.status_code, cell.error_message
        output = cell.model_output.output if cell.model_output is not None else None

    console.print(f"[{status_style(cell_status)}]{cell_status}[/] ({code})")
    if error and cell_status != "COMPLETE":
        console.print(f"[red]{error}[/red]")
        sys.exit(1)
    if output is not None and not stream:
        console.print_json(data=output)
