"""Structured logging and verbosity levels for pipeline sweeps."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any

from rich.console import Console


class Verbosity(IntEnum):
    """Verbosity levels for console output."""

    DEFAULT = 0   # Summary table only
    VERBOSE = 1   # + per-node progress, per-batch status
    DEBUG = 2     # + per-entry results, timing


@dataclass
class NodeLog:
    """Per-node sweep statistics."""

    node_id: str
    node_type: str = ""
    cache_hits: int = 0
    skipped: int = 0
    processed: int = 0
    errors: int = 0
    deferred: int = 0
    model_calls: int = 0
    tokens_used: int = 0
    invalidated: bool = False
    time_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "cache_hits": self.cache_hits,
            "skipped": self.skipped,
            "processed": self.processed,
            "errors": self.errors,
            "deferred": self.deferred,
            "model_calls": self.model_calls,
            "tokens_used": self.tokens_used,
            "invalidated": self.invalidated,
            "time_seconds": self.time_seconds,
        }


@dataclass
class RunLog:
    """Structured log of one driver sweep.

    The dict format is::

        {
            "run_id": "20250101T000000Z",
            "nodes": {
                "<node id>": {"cache_hits": 3, "processed": 7, ...},
                ...
            },
            "total_model_calls": 7,
            "total_cache_hits": 3,
            "total_errors": 0,
            "total_time": 1.2,
            "total_tokens": 900,
        }
    """

    run_id: str = ""
    nodes: dict[str, NodeLog] = field(default_factory=dict)
    total_time: float = 0.0
    total_model_calls: int = 0
    total_cache_hits: int = 0
    total_errors: int = 0
    total_tokens: int = 0

    def get_or_create_node(self, node_id: str) -> NodeLog:
        """Get existing node log or create a new one."""
        if node_id not in self.nodes:
            self.nodes[node_id] = NodeLog(node_id=node_id)
        return self.nodes[node_id]

    def finalize(self) -> None:
        """Compute totals from node data."""
        self.total_model_calls = sum(n.model_calls for n in self.nodes.values())
        self.total_cache_hits = sum(n.cache_hits for n in self.nodes.values())
        self.total_errors = sum(n.errors for n in self.nodes.values())
        self.total_tokens = sum(n.tokens_used for n in self.nodes.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
            "total_model_calls": self.total_model_calls,
            "total_cache_hits": self.total_cache_hits,
            "total_errors": self.total_errors,
            "total_time": self.total_time,
            "total_tokens": self.total_tokens,
        }


class PipelineLogger:
    """Structured logger for driver sweeps.

    Writes JSONL log files to logs_dir and optionally emits console output
    via Rich based on verbosity level.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.DEFAULT,
        logs_dir: Path | None = None,
        console: Console | None = None,
    ):
        self.verbosity = verbosity
        self.run_log = RunLog(
            run_id=datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"),
        )
        self._console = console or Console()
        self._lock = threading.Lock()
        self._log_file = None
        self._log_path: Path | None = None
        self._node_start: dict[str, float] = {}

        if logs_dir is not None:
            logs_dir.mkdir(parents=True, exist_ok=True)
            self._log_path = logs_dir / f"{self.run_log.run_id}.jsonl"
            self._log_file = open(self._log_path, "a")

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write_event(self, event: dict[str, Any]) -> None:
        """Write a JSON event to the JSONL log file."""
        with self._lock:
            if self._log_file is not None:
                event["timestamp"] = datetime.now(timezone.utc).isoformat()
                self._log_file.write(json.dumps(event) + "\n")
                self._log_file.flush()

    def _console_print(self, message: str, min_verbosity: Verbosity) -> None:
        if self.verbosity >= min_verbosity:
            self._console.print(message)

    # -- Node events --

    def node_start(self, node_id: str, node_type: str, position: int) -> None:
        self._node_start[node_id] = time.time()
        self.run_log.get_or_create_node(node_id).node_type = node_type

        self._write_event({
            "event": "node_start",
            "node_id": node_id,
            "node_type": node_type,
            "position": position,
        })
        self._console_print(
            f"  [bold]Processing node:[/bold] {node_id} ({node_type})",
            Verbosity.VERBOSE,
        )

    def node_invalidated(self, node_id: str, reasons: list[str], entries: int) -> None:
        """Log that a node's hash changed and its entries were reset."""
        self.run_log.get_or_create_node(node_id).invalidated = True

        self._write_event({
            "event": "node_invalidated",
            "node_id": node_id,
            "reasons": reasons,
            "entries": entries,
        })
        self._console_print(
            f"    [yellow]invalidated[/yellow] {entries} entries ({', '.join(reasons)})",
            Verbosity.VERBOSE,
        )

    def entries_synced(self, node_id: str, created: int, updated: int, deleted: int) -> None:
        self._write_event({
            "event": "entries_synced",
            "node_id": node_id,
            "created": created,
            "updated": updated,
            "deleted": deleted,
        })
        if created or updated or deleted:
            self._console_print(
                f"    synced from parents: +{created} ~{updated} -{deleted}",
                Verbosity.VERBOSE,
            )

    def cache_hits(self, node_id: str, count: int, skipped: int = 0) -> None:
        """Log entries resolved without running a transform."""
        node = self.run_log.get_or_create_node(node_id)
        node.cache_hits += count
        node.skipped += skipped

        self._write_event({
            "event": "cache_hits",
            "node_id": node_id,
            "cache_hits": count,
            "skipped": skipped,
        })
        if count or skipped:
            self._console_print(
                f"    [cyan]=[/cyan] {count} cached, {skipped} skipped",
                Verbosity.VERBOSE,
            )

    def batch_start(self, node_id: str, size: int, concurrency: int) -> None:
        self._write_event({
            "event": "batch_start",
            "node_id": node_id,
            "size": size,
            "concurrency": concurrency,
        })
        self._console_print(
            f"    [dim]batch of {size} (concurrency {concurrency})[/dim]",
            Verbosity.DEBUG,
        )

    def entry_result(
        self,
        node_id: str,
        persistent_id: str,
        status: str,
        error: str | None = None,
        model_calls: int = 0,
        tokens: int = 0,
    ) -> None:
        """Log the outcome of one transform."""
        node = self.run_log.get_or_create_node(node_id)
        node.model_calls += model_calls
        node.tokens_used += tokens
        if status == "PROCESSED":
            node.processed += 1
            marker = "[green]+[/green]"
        elif status == "PENDING":
            node.deferred += 1
            marker = "[yellow]~[/yellow]"
        else:
            node.errors += 1
            marker = "[red]![/red]"

        event: dict[str, Any] = {
            "event": "entry_result",
            "node_id": node_id,
            "persistent_id": persistent_id,
            "status": status,
        }
        if error:
            event["error"] = error
        self._write_event(event)
        self._console_print(
            f"      {marker} {persistent_id}" + (f" [dim]{error}[/dim]" if error else ""),
            Verbosity.DEBUG,
        )

    def node_finish(self, node_id: str) -> None:
        elapsed = time.time() - self._node_start.pop(node_id, time.time())
        node = self.run_log.get_or_create_node(node_id)
        node.time_seconds += elapsed

        self._write_event({
            "event": "node_finish",
            "node_id": node_id,
            "processed": node.processed,
            "cache_hits": node.cache_hits,
            "errors": node.errors,
            "deferred": node.deferred,
            "time_seconds": round(elapsed, 3),
        })
        self._console_print(
            f"    {node_id}: {node.processed} processed, {node.cache_hits} cached, "
            f"{node.errors} errors, {node.deferred} deferred ({elapsed:.1f}s)",
            Verbosity.VERBOSE,
        )

    # -- Run lifecycle --

    def run_start(self, root_node_id: str, node_count: int, invalidate: bool) -> None:
        self._write_event({
            "event": "run_start",
            "root_node_id": root_node_id,
            "node_count": node_count,
            "invalidate": invalidate,
        })

    def run_finish(self, total_time: float) -> None:
        """Log the completion of a sweep and finalize stats."""
        self.run_log.total_time = total_time
        self.run_log.finalize()

        self._write_event({
            "event": "run_finish",
            "total_time": round(total_time, 3),
            "total_model_calls": self.run_log.total_model_calls,
            "total_cache_hits": self.run_log.total_cache_hits,
            "total_errors": self.run_log.total_errors,
            "total_tokens": self.run_log.total_tokens,
        })
        self.close()

    def close(self) -> None:
        """Close the log file if open."""
        with self._lock:
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None
