"""Manual relabel nodes — operator edits layered over upstream entries."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from nodepipe.build.entry_store import EntryStore, ensure_entry_input, ensure_entry_output
from nodepipe.core.errors import NotFoundError
from nodepipe.core.models import (
    CacheMatchField,
    CacheWriteField,
    NodeEntryStatus,
    NodeType,
    Split,
)
from nodepipe.db.models import CachedProcessedEntry, NodeEntry
from nodepipe.nodes.base import NodeKind, ProcessEntryResult, TypedNode, register_kind


class ManualRelabelConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")


@register_kind
class ManualRelabelKind(NodeKind):
    """Identity transform whose edits live in node-id keyed cache records.

    Edits are matched by persistent id and incoming input hash, so an edit
    survives upstream output changes but is dropped when the row's input
    changes.
    """

    node_type = NodeType.MANUAL_RELABEL
    config_schema = ManualRelabelConfig
    cache_match_fields = (CacheMatchField.PERSISTENT_ID, CacheMatchField.INCOMING_INPUT_HASH)
    cache_write_fields = (
        CacheWriteField.OUTGOING_INPUT_HASH,
        CacheWriteField.OUTGOING_OUTPUT_HASH,
        CacheWriteField.OUTGOING_SPLIT,
    )

    def concurrency(self, node: TypedNode) -> int:
        return 4

    def process_entry(self, node, entry) -> ProcessEntryResult:
        return ProcessEntryResult.processed()


def apply_manual_edit(
    store: EntryStore,
    node_id: str,
    persistent_id: str,
    *,
    input: dict[str, Any] | None = None,
    output: Any | None = None,
    split: Split | None = None,
) -> NodeEntry:
    """Record an operator edit of one entry and apply it immediately.

    The edit is stored as a cache record keyed by ``node_id`` so every later
    reprocessing of the row re-applies it without running the transform.
    """
    with store.session() as session:
        entry = session.scalar(
            select(NodeEntry).where(
                NodeEntry.node_id == node_id,
                NodeEntry.persistent_id == persistent_id,
                NodeEntry.deleted_at.is_(None),
            )
        )
        if entry is None:
            raise NotFoundError(f"Entry {persistent_id} not found at node {node_id}")

        # Match on the input the row arrives with, not a previously edited one.
        # An earlier edit only applies while the row still carries its input.
        previous = session.scalar(
            select(CachedProcessedEntry)
            .where(
                CachedProcessedEntry.node_id == node_id,
                CachedProcessedEntry.persistent_id == persistent_id,
            )
            .order_by(CachedProcessedEntry.id.desc())
            .limit(1)
        )
        if previous is not None and previous.outgoing_input_hash == entry.input_hash:
            incoming_input_hash = previous.incoming_input_hash
        else:
            incoming_input_hash = entry.input_hash

        input_hash = ensure_entry_input(session, input) if input is not None else entry.input_hash
        output_hash = ensure_entry_output(session, output) if output is not None else entry.output_hash
        new_split = split or entry.split

        store.write_cache_record(
            session,
            node_id=node_id,
            persistent_id=persistent_id,
            incoming_input_hash=incoming_input_hash,
            incoming_output_hash=entry.output_hash,
            outgoing_input_hash=input_hash,
            outgoing_output_hash=output_hash,
            outgoing_split=new_split,
        )

        if output_hash != entry.output_hash:
            entry.original_output_hash = entry.output_hash
        entry.input_hash = input_hash
        entry.output_hash = output_hash
        entry.split = new_split
        entry.status = NodeEntryStatus.PROCESSED
        entry.error = None
        return entry
