"""Bulk ingestion of newline-delimited JSON records into an Archive node."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from nodepipe.build.entry_store import ensure_entry_input, ensure_entry_output
from nodepipe.core.errors import ValidationError
from nodepipe.core.models import NodeEntryStatus, NodeType, Split
from nodepipe.db.models import NodeEntry
from nodepipe.services.nodes import get_node

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged


def parse_record(raw: Any, line_number: int) -> dict[str, Any]:
    """Normalize one ingested record.

    Accepts either ``{"input": {"messages": [...]}, "output": {...}}`` or the
    request fields at top level. ``split`` and ``persistent_id`` are optional.
    """
    if not isinstance(raw, dict):
        raise ValidationError(f"Line {line_number}: expected a JSON object")
    request = raw.get("input", raw)
    if not isinstance(request, dict):
        raise ValidationError(f"Line {line_number}: input must be an object")
    messages = request.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError(f"Line {line_number}: input.messages must be a non-empty list")

    split = raw.get("split")
    if split is not None:
        try:
            split = Split(str(split).upper())
        except ValueError as exc:
            raise ValidationError(f"Line {line_number}: unknown split {split!r}") from exc

    persistent_id = raw.get("persistent_id")
    if persistent_id is not None and not isinstance(persistent_id, str):
        raise ValidationError(f"Line {line_number}: persistent_id must be a string")

    return {
        "request": request,
        "output": raw.get("output"),
        "split": split,
        "persistent_id": persistent_id,
    }


def ingest_jsonl(session: Session, node_id: str, lines: Iterable[str]) -> IngestResult:
    """Load records into an Archive node as PENDING entries.

    Records with a known ``persistent_id`` replace that entry's content and
    go back to PENDING only when the content changed. The whole file is
    validated before anything is written.

    Raises:
        ValidationError: The node is not an Archive or a line is malformed.
    """
    node = get_node(session, node_id)
    if node.type != NodeType.ARCHIVE:
        raise ValidationError(f"Records can only be ingested into Archive nodes, not {node.type.value}")

    records = []
    for line_number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Line {line_number}: invalid JSON ({exc.msg})") from exc
        records.append(parse_record(raw, line_number))

    existing = {
        entry.persistent_id: entry
        for entry in session.scalars(select(NodeEntry).where(NodeEntry.node_id == node_id))
    }

    result = IngestResult()
    for record in records:
        input_hash = ensure_entry_input(session, record["request"])
        output_hash = (
            ensure_entry_output(session, record["output"]) if record["output"] is not None else None
        )
        persistent_id = record["persistent_id"] or str(uuid4())
        entry = existing.get(persistent_id)

        if entry is None:
            entry = NodeEntry(
                node_id=node_id,
                persistent_id=persistent_id,
                input_hash=input_hash,
                output_hash=output_hash,
                split=record["split"] or Split.TRAIN,
                status=NodeEntryStatus.PENDING,
            )
            session.add(entry)
            existing[persistent_id] = entry
            result.created += 1
            continue

        if (
            entry.input_hash == input_hash
            and entry.output_hash == output_hash
            and entry.deleted_at is None
        ):
            result.unchanged += 1
            continue
        entry.input_hash = input_hash
        entry.output_hash = output_hash
        entry.original_output_hash = None
        if record["split"] is not None:
            entry.split = record["split"]
        entry.status = NodeEntryStatus.PENDING
        entry.error = None
        entry.deleted_at = None
        result.updated += 1

    session.flush()
    logger.info(
        "Ingested %d records into %s (%d new, %d updated)",
        result.total,
        node_id,
        result.created,
        result.updated,
    )
    return result
