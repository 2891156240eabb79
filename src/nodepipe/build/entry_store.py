"""Entry store — persisted node entries, their content, and the processed-entry cache.

The store is the only shared mutable resource of the pipeline. Every status
transition is a single-row or set-based update scoped by node or entry id;
no cross-node locks are taken.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.orm import Session, aliased, sessionmaker

from nodepipe.build.fingerprint import (
    entry_input_fields,
    hash_entry_input,
    hash_entry_output,
    hash_upstream_row,
)
from nodepipe.core.models import CacheMatchField, CacheWriteField, NodeEntryStatus, Split
from nodepipe.db.engine import session_scope
from nodepipe.db.models import CachedProcessedEntry, EntryInput, EntryOutput, NodeEntry

if TYPE_CHECKING:
    from nodepipe.nodes.base import NodeKind, ProcessEntryResult, TypedNode

# Entry column each cache match field is compared against
_MATCH_COLUMNS = {
    CacheMatchField.INCOMING_INPUT_HASH: NodeEntry.input_hash,
    CacheMatchField.INCOMING_OUTPUT_HASH: NodeEntry.output_hash,
    CacheMatchField.PERSISTENT_ID: NodeEntry.persistent_id,
}


@dataclass
class EntryRow:
    """A pending entry together with its resolved input and output content."""

    id: str
    node_id: str
    persistent_id: str
    status: NodeEntryStatus
    input_hash: str
    output_hash: str | None
    split: Split
    input: dict[str, Any]
    output: Any | None


@dataclass
class SyncResult:
    """Counts from forwarding parent rows into a child node."""

    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def changed(self) -> int:
        return self.created + self.updated + self.deleted


def ensure_entry_input(session: Session, record: Mapping[str, Any]) -> str:
    """Store the request fields of ``record`` content-addressed; return their hash."""
    fields = entry_input_fields(record)
    digest = hash_entry_input(fields)
    _ensure_content(
        session,
        EntryInput(
            hash=digest,
            messages_json=json.dumps(fields["messages"]),
            tool_choice_json=_dumps(fields["tool_choice"]),
            tools_json=_dumps(fields["tools"]),
            response_format_json=_dumps(fields["response_format"]),
        ),
    )
    return digest


def ensure_entry_output(session: Session, output: Any) -> str:
    """Store a response message content-addressed; return its hash."""
    digest = hash_entry_output(output)
    _ensure_content(session, EntryOutput(hash=digest, output_json=json.dumps(output)))
    return digest


def _ensure_content(session: Session, row: EntryInput | EntryOutput) -> None:
    # Same hash means same content, so an existing row is left as is
    if session.get(type(row), row.hash) is None:
        session.merge(row)


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


class EntryStore:
    """Reads and status transitions for node entries.

    Args:
        session_factory: Factory for sessions bound to the pipeline database.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def session(self):
        """Context manager yielding a committed-on-success session."""
        return session_scope(self._session_factory)

    # -- Reads --

    def list_pending(
        self,
        node_id: str,
        batch_size: int,
        exclude: Iterable[str] = (),
    ) -> list[EntryRow]:
        """Return up to ``batch_size`` PENDING entries ordered by persistent id.

        Restartable: callers mark a returned batch PROCESSING before asking
        for the next one. ``exclude`` skips entries deferred earlier in the
        same sweep.
        """
        stmt = (
            select(NodeEntry, EntryInput, EntryOutput)
            .outerjoin(EntryInput, EntryInput.hash == NodeEntry.input_hash)
            .outerjoin(EntryOutput, EntryOutput.hash == NodeEntry.output_hash)
            .where(
                NodeEntry.node_id == node_id,
                NodeEntry.status == NodeEntryStatus.PENDING,
                NodeEntry.deleted_at.is_(None),
            )
            .order_by(NodeEntry.persistent_id)
            .limit(batch_size)
        )
        excluded = list(exclude)
        if excluded:
            stmt = stmt.where(NodeEntry.id.not_in(excluded))

        with self.session() as session:
            rows = session.execute(stmt).all()
            return [
                EntryRow(
                    id=entry.id,
                    node_id=entry.node_id,
                    persistent_id=entry.persistent_id,
                    status=entry.status,
                    input_hash=entry.input_hash,
                    output_hash=entry.output_hash,
                    split=entry.split,
                    input=entry_input.to_dict() if entry_input is not None else {},
                    output=entry_output.output if entry_output is not None else None,
                )
                for entry, entry_input, entry_output in rows
            ]

    def get_entry(self, node_id: str, persistent_id: str) -> NodeEntry | None:
        with self.session() as session:
            return session.scalar(
                select(NodeEntry).where(
                    NodeEntry.node_id == node_id, NodeEntry.persistent_id == persistent_id
                )
            )

    def status_counts(self, node_id: str) -> dict[NodeEntryStatus, int]:
        """Count live entries of a node by status."""
        stmt = (
            select(NodeEntry.status, func.count())
            .where(NodeEntry.node_id == node_id, NodeEntry.deleted_at.is_(None))
            .group_by(NodeEntry.status)
        )
        with self.session() as session:
            counts = {status: 0 for status in NodeEntryStatus}
            for status, count in session.execute(stmt).all():
                counts[status] = count
            return counts

    # -- Status transitions --

    def mark_processing(self, entry_ids: Iterable[str]) -> int:
        """Claim PENDING entries for processing."""
        ids = list(entry_ids)
        if not ids:
            return 0
        return self._update(
            and_(NodeEntry.id.in_(ids), NodeEntry.status == NodeEntryStatus.PENDING),
            status=NodeEntryStatus.PROCESSING,
        )

    def mark_pending_processed(self, node_id: str) -> int:
        """Shortcut every PENDING entry of a node straight to PROCESSED."""
        return self._update(
            and_(
                NodeEntry.node_id == node_id,
                NodeEntry.status == NodeEntryStatus.PENDING,
                NodeEntry.deleted_at.is_(None),
            ),
            status=NodeEntryStatus.PROCESSED,
            error=None,
        )

    def mark_error(self, entry_id: str, error: str) -> int:
        return self._update(NodeEntry.id == entry_id, status=NodeEntryStatus.ERROR, error=error)

    def mark_pending(self, entry_id: str, error: str | None = None) -> int:
        return self._update(NodeEntry.id == entry_id, status=NodeEntryStatus.PENDING, error=error)

    def release_processing(self, node_id: str) -> int:
        """Return entries left PROCESSING by an interrupted run to PENDING."""
        return self._update(
            and_(NodeEntry.node_id == node_id, NodeEntry.status == NodeEntryStatus.PROCESSING),
            status=NodeEntryStatus.PENDING,
        )

    def requeue_errors(self, node_id: str) -> int:
        """Explicit reprocessing request: move ERROR entries back to PENDING."""
        return self._update(
            and_(
                NodeEntry.node_id == node_id,
                NodeEntry.status == NodeEntryStatus.ERROR,
                NodeEntry.deleted_at.is_(None),
            ),
            status=NodeEntryStatus.PENDING,
            error=None,
        )

    def mark_processed(
        self,
        entry: EntryRow,
        node: TypedNode,
        kind: NodeKind,
        output: Any | None = None,
        split: Split | None = None,
    ) -> None:
        """Record a successful transform and, if the kind caches, its result."""
        with self.session() as session:
            values: dict[str, Any] = {"status": NodeEntryStatus.PROCESSED, "error": None}
            output_hash = entry.output_hash
            if output is not None:
                output_hash = ensure_entry_output(session, output)
                if output_hash != entry.output_hash:
                    values["output_hash"] = output_hash
                    values["original_output_hash"] = entry.output_hash
            final_split = split or entry.split
            if split is not None:
                values["split"] = split

            session.execute(
                update(NodeEntry)
                .where(NodeEntry.id == entry.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if kind.write_cache_on_process and kind.uses_cache:
                session.add(
                    CachedProcessedEntry(
                        node_hash=node.hash,
                        persistent_id=entry.persistent_id,
                        incoming_input_hash=entry.input_hash,
                        incoming_output_hash=entry.output_hash,
                        outgoing_input_hash=entry.input_hash,
                        outgoing_output_hash=output_hash,
                        outgoing_split=final_split,
                    )
                )

    def complete_entry(
        self,
        entry: EntryRow,
        node: TypedNode,
        kind: NodeKind,
        result: ProcessEntryResult,
    ) -> None:
        """Apply a transform result to its entry."""
        if result.status == NodeEntryStatus.PROCESSED:
            self.mark_processed(entry, node, kind, output=result.output, split=result.split)
        elif result.status == NodeEntryStatus.PENDING:
            self.mark_pending(entry.id, result.error)
        else:
            self.mark_error(entry.id, result.error or "Unknown error")

    # -- Cache --

    def propagate_cache_hits(self, node: TypedNode, kind: NodeKind) -> int:
        """Resolve PENDING entries from matching cache records in one bulk update.

        A record matches when it is keyed by this node's hash or this node's
        id and agrees with the entry on every cache match field. When several
        records match, the most recently written one supplies the values.
        Kinds without both match and write fields never hit the cache.

        Returns:
            Number of entries moved to PROCESSED.
        """
        if not kind.uses_cache:
            return 0

        def matching(cached):
            conditions = [or_(cached.node_hash == node.hash, cached.node_id == node.id)]
            for field in kind.cache_match_fields:
                conditions.append(getattr(cached, field.value) == _MATCH_COLUMNS[field])
            return and_(*conditions)

        def latest(column: str):
            cached = aliased(CachedProcessedEntry)
            return (
                select(getattr(cached, column))
                .where(matching(cached))
                .order_by(cached.id.desc())
                .limit(1)
                .scalar_subquery()
            )

        values: dict[str, Any] = {"status": NodeEntryStatus.PROCESSED, "error": None}
        if CacheWriteField.OUTGOING_INPUT_HASH in kind.cache_write_fields:
            values["input_hash"] = latest("outgoing_input_hash")
        if CacheWriteField.OUTGOING_OUTPUT_HASH in kind.cache_write_fields:
            values["output_hash"] = latest("outgoing_output_hash")
            values["original_output_hash"] = NodeEntry.output_hash
        if CacheWriteField.OUTGOING_SPLIT in kind.cache_write_fields:
            values["split"] = latest("outgoing_split")

        any_match = aliased(CachedProcessedEntry)
        stmt = (
            update(NodeEntry)
            .where(
                NodeEntry.node_id == node.id,
                NodeEntry.status == NodeEntryStatus.PENDING,
                NodeEntry.deleted_at.is_(None),
                exists(select(any_match.id).where(matching(any_match))),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self.session() as session:
            return session.execute(stmt).rowcount or 0

    def write_cache_record(
        self,
        session: Session,
        *,
        node_id: str | None = None,
        node_hash: str | None = None,
        persistent_id: str | None = None,
        incoming_input_hash: str | None = None,
        incoming_output_hash: str | None = None,
        outgoing_input_hash: str | None = None,
        outgoing_output_hash: str | None = None,
        outgoing_split: Split | None = None,
    ) -> CachedProcessedEntry:
        """Add a cache record keyed by a node id or a node hash."""
        if node_id is None and node_hash is None:
            raise ValueError("A cache record needs a node id or a node hash")
        record = CachedProcessedEntry(
            node_id=node_id,
            node_hash=node_hash,
            persistent_id=persistent_id,
            incoming_input_hash=incoming_input_hash,
            incoming_output_hash=incoming_output_hash,
            outgoing_input_hash=outgoing_input_hash,
            outgoing_output_hash=outgoing_output_hash,
            outgoing_split=outgoing_split,
        )
        session.add(record)
        return record

    # -- Lineage --

    def sync_from_parents(
        self,
        node_id: str,
        parent_ids: list[str],
        force: bool = False,
    ) -> SyncResult:
        """Forward PROCESSED parent rows into a child node.

        New rows are created PENDING; rows whose parent values changed (or
        every forwarded row, when ``force``) are reset to the parent values
        and PENDING; rows whose parent row vanished or failed are
        soft-deleted. Rows whose parent is still in flight are left alone.
        """
        result = SyncResult()
        if not parent_ids:
            return result

        with self.session() as session:
            parent_rows = session.execute(
                select(
                    NodeEntry.persistent_id,
                    NodeEntry.input_hash,
                    NodeEntry.output_hash,
                    NodeEntry.split,
                    NodeEntry.status,
                )
                .where(NodeEntry.node_id.in_(parent_ids), NodeEntry.deleted_at.is_(None))
                .order_by(NodeEntry.persistent_id)
            ).all()

            processed: dict[str, Any] = {}
            in_flight: set[str] = set()
            for row in parent_rows:
                if row.status == NodeEntryStatus.PROCESSED:
                    processed.setdefault(row.persistent_id, row)
                elif row.status in (NodeEntryStatus.PENDING, NodeEntryStatus.PROCESSING):
                    in_flight.add(row.persistent_id)

            children = {
                child.persistent_id: child
                for child in session.scalars(select(NodeEntry).where(NodeEntry.node_id == node_id))
            }

            for persistent_id, row in processed.items():
                upstream_hash = hash_upstream_row(row.input_hash, row.output_hash, row.split.value)
                child = children.get(persistent_id)
                if child is None:
                    session.add(
                        NodeEntry(
                            node_id=node_id,
                            persistent_id=persistent_id,
                            input_hash=row.input_hash,
                            output_hash=row.output_hash,
                            split=row.split,
                            upstream_hash=upstream_hash,
                            status=NodeEntryStatus.PENDING,
                        )
                    )
                    result.created += 1
                elif force or child.upstream_hash != upstream_hash or child.deleted_at is not None:
                    child.input_hash = row.input_hash
                    child.output_hash = row.output_hash
                    child.original_output_hash = None
                    child.split = row.split
                    child.upstream_hash = upstream_hash
                    child.status = NodeEntryStatus.PENDING
                    child.error = None
                    child.deleted_at = None
                    result.updated += 1

            now = datetime.now(timezone.utc)
            for persistent_id, child in children.items():
                if child.deleted_at is not None:
                    continue
                if persistent_id in processed or persistent_id in in_flight:
                    continue
                child.deleted_at = now
                result.deleted += 1

        return result

    def invalidate_node(self, node_id: str, parent_ids: list[str]) -> int:
        """Force every live entry of a node back to PENDING.

        Entries of downstream nodes are first reset to their parent's values,
        discarding outputs this node wrote earlier.
        """
        self.sync_from_parents(node_id, parent_ids, force=True)
        return self._update(
            and_(NodeEntry.node_id == node_id, NodeEntry.deleted_at.is_(None)),
            status=NodeEntryStatus.PENDING,
            error=None,
        )

    def _update(self, where, **values: Any) -> int:
        stmt = (
            update(NodeEntry)
            .where(where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self.session() as session:
            return session.execute(stmt).rowcount or 0
