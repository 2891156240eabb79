"""Tests for the entry store — status transitions, lineage sync and the processed-entry cache."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from nodepipe.build.entry_store import ensure_entry_output
from nodepipe.build.fingerprint import hash_entry_output
from nodepipe.core.models import NodeEntryStatus, NodeType
from nodepipe.db.engine import session_scope
from nodepipe.db.models import CachedProcessedEntry
from nodepipe.nodes import TypedNode, build_kinds
from nodepipe.services.ingest import ingest_jsonl
from tests.helpers.pipeline import jsonl, make_record


@pytest.fixture
def kinds(providers):
    return build_kinds(providers)


@pytest.fixture
def pipeline(build_pipeline):
    return build_pipeline(
        [make_record("p3", "q3"), make_record("p1", "q1"), make_record("p2", "q2")]
    )


def typed_relabel(kinds, pipeline, node_hash="relabel-hash") -> TypedNode:
    kind = kinds[NodeType.LLM_RELABEL]
    return TypedNode(
        id=pipeline.relabel_id,
        project_id="project-1",
        type=NodeType.LLM_RELABEL,
        name="relabel",
        hash=node_hash,
        config=kind.parse_config({"relabel_llm": "gpt-4o-mini"}),
    )


def forward_to_relabel(store, pipeline):
    """Finish the archive and create PENDING relabel entries."""
    store.mark_pending_processed(pipeline.archive_id)
    return store.sync_from_parents(pipeline.relabel_id, [pipeline.archive_id])


def add_record(store, **values) -> None:
    with store.session() as session:
        store.write_cache_record(session, **values)


def new_output(store, content: str) -> str:
    with store.session() as session:
        return ensure_entry_output(session, {"role": "assistant", "content": content})


class TestListPending:
    def test_ordered_by_persistent_id(self, store, pipeline):
        rows = store.list_pending(pipeline.archive_id, 10)
        assert [r.persistent_id for r in rows] == ["p1", "p2", "p3"]

    def test_batch_size(self, store, pipeline):
        rows = store.list_pending(pipeline.archive_id, 2)
        assert [r.persistent_id for r in rows] == ["p1", "p2"]

    def test_exclude(self, store, pipeline):
        first = store.list_pending(pipeline.archive_id, 1)[0]
        rows = store.list_pending(pipeline.archive_id, 10, exclude=[first.id])
        assert [r.persistent_id for r in rows] == ["p2", "p3"]

    def test_content_resolved(self, store, pipeline):
        row = store.list_pending(pipeline.archive_id, 1)[0]
        assert row.input["messages"] == [{"role": "user", "content": "q1"}]
        assert row.output == {"role": "assistant", "content": "old answer"}

    def test_mark_processing_claims_only_pending(self, store, pipeline):
        rows = store.list_pending(pipeline.archive_id, 10)
        assert store.mark_processing(r.id for r in rows) == 3
        assert store.list_pending(pipeline.archive_id, 10) == []
        assert store.mark_processing(r.id for r in rows) == 0

    def test_release_processing(self, store, pipeline):
        rows = store.list_pending(pipeline.archive_id, 10)
        store.mark_processing(r.id for r in rows)
        assert store.release_processing(pipeline.archive_id) == 3
        assert len(store.list_pending(pipeline.archive_id, 10)) == 3

    def test_status_counts(self, store, pipeline):
        row = store.list_pending(pipeline.archive_id, 1)[0]
        store.mark_error(row.id, "bad")
        counts = store.status_counts(pipeline.archive_id)
        assert counts[NodeEntryStatus.PENDING] == 2
        assert counts[NodeEntryStatus.ERROR] == 1
        assert counts[NodeEntryStatus.PROCESSED] == 0


class TestSyncFromParents:
    def test_creates_pending_children(self, store, pipeline):
        result = forward_to_relabel(store, pipeline)
        assert result.created == 3
        child = store.get_entry(pipeline.relabel_id, "p1")
        parent = store.get_entry(pipeline.archive_id, "p1")
        assert child.status == NodeEntryStatus.PENDING
        assert child.input_hash == parent.input_hash
        assert child.output_hash == parent.output_hash

    def test_unchanged_parents_are_a_no_op(self, store, pipeline):
        forward_to_relabel(store, pipeline)
        result = store.sync_from_parents(pipeline.relabel_id, [pipeline.archive_id])
        assert result.changed == 0

    def test_in_flight_parent_leaves_child_alone(self, store, session_factory, pipeline):
        forward_to_relabel(store, pipeline)
        with session_scope(session_factory) as session:
            ingest_jsonl(session, pipeline.archive_id, jsonl([make_record("p1", "q1 changed")]))

        result = store.sync_from_parents(pipeline.relabel_id, [pipeline.archive_id])
        assert result.changed == 0
        assert store.get_entry(pipeline.relabel_id, "p1").deleted_at is None

    def test_changed_parent_resets_child(self, store, session_factory, pipeline):
        forward_to_relabel(store, pipeline)
        store.mark_pending_processed(pipeline.relabel_id)
        with session_scope(session_factory) as session:
            ingest_jsonl(session, pipeline.archive_id, jsonl([make_record("p1", "q1 changed")]))
        store.mark_pending_processed(pipeline.archive_id)

        result = store.sync_from_parents(pipeline.relabel_id, [pipeline.archive_id])
        assert result.updated == 1
        child = store.get_entry(pipeline.relabel_id, "p1")
        assert child.status == NodeEntryStatus.PENDING
        assert child.input_hash == store.get_entry(pipeline.archive_id, "p1").input_hash

    def test_failed_parent_soft_deletes_child(self, store, pipeline):
        forward_to_relabel(store, pipeline)
        parent = store.get_entry(pipeline.archive_id, "p2")
        store.mark_error(parent.id, "broken")

        result = store.sync_from_parents(pipeline.relabel_id, [pipeline.archive_id])
        assert result.deleted == 1
        assert store.get_entry(pipeline.relabel_id, "p2").deleted_at is not None
        assert store.status_counts(pipeline.relabel_id)[NodeEntryStatus.PENDING] == 2

    def test_recovered_parent_restores_child(self, store, pipeline):
        forward_to_relabel(store, pipeline)
        parent = store.get_entry(pipeline.archive_id, "p2")
        store.mark_error(parent.id, "broken")
        store.sync_from_parents(pipeline.relabel_id, [pipeline.archive_id])

        store.requeue_errors(pipeline.archive_id)
        store.mark_pending_processed(pipeline.archive_id)
        result = store.sync_from_parents(pipeline.relabel_id, [pipeline.archive_id])
        assert result.updated == 1
        assert store.get_entry(pipeline.relabel_id, "p2").deleted_at is None

    def test_invalidate_node_resets_everything(self, store, pipeline):
        forward_to_relabel(store, pipeline)
        store.mark_pending_processed(pipeline.relabel_id)
        assert store.invalidate_node(pipeline.relabel_id, [pipeline.archive_id]) == 3
        assert store.status_counts(pipeline.relabel_id)[NodeEntryStatus.PENDING] == 3


class TestErrors:
    def test_requeue_errors(self, store, pipeline):
        row = store.list_pending(pipeline.archive_id, 1)[0]
        store.mark_error(row.id, "bad request")
        assert store.requeue_errors(pipeline.archive_id) == 1
        entry = store.get_entry(pipeline.archive_id, row.persistent_id)
        assert entry.status == NodeEntryStatus.PENDING
        assert entry.error is None

    def test_requeue_errors_ignores_other_statuses(self, store, pipeline):
        assert store.requeue_errors(pipeline.archive_id) == 0


class TestMarkProcessed:
    def test_caching_kind_writes_record(self, store, session_factory, kinds, pipeline):
        forward_to_relabel(store, pipeline)
        node = typed_relabel(kinds, pipeline)
        row = store.list_pending(pipeline.relabel_id, 1)[0]
        output = {"role": "assistant", "content": "new"}

        store.mark_processed(row, node, kinds[NodeType.LLM_RELABEL], output=output)

        entry = store.get_entry(pipeline.relabel_id, "p1")
        assert entry.status == NodeEntryStatus.PROCESSED
        assert entry.output_hash == hash_entry_output(output)
        assert entry.original_output_hash == row.output_hash
        with session_scope(session_factory) as session:
            record = session.scalars(select(CachedProcessedEntry)).one()
        assert record.node_hash == "relabel-hash"
        assert record.node_id is None
        assert record.incoming_input_hash == row.input_hash
        assert record.outgoing_output_hash == hash_entry_output(output)

    def test_non_caching_kind_writes_nothing(self, store, session_factory, kinds, pipeline):
        row = store.list_pending(pipeline.archive_id, 1)[0]
        node = TypedNode(
            id=pipeline.archive_id,
            project_id="project-1",
            type=NodeType.ARCHIVE,
            name="archive",
            hash="archive-hash",
            config=kinds[NodeType.ARCHIVE].parse_config({}),
        )
        store.mark_processed(row, node, kinds[NodeType.ARCHIVE])
        with session_scope(session_factory) as session:
            assert session.scalar(select(func.count()).select_from(CachedProcessedEntry)) == 0


class TestPropagateCacheHits:
    def test_hit_by_node_hash(self, store, kinds, pipeline):
        forward_to_relabel(store, pipeline)
        node = typed_relabel(kinds, pipeline)
        entry = store.get_entry(pipeline.relabel_id, "p1")
        cached_output = new_output(store, "cached")
        add_record(
            store,
            node_hash=node.hash,
            incoming_input_hash=entry.input_hash,
            outgoing_output_hash=cached_output,
        )

        assert store.propagate_cache_hits(node, kinds[NodeType.LLM_RELABEL]) == 1
        hit = store.get_entry(pipeline.relabel_id, "p1")
        assert hit.status == NodeEntryStatus.PROCESSED
        assert hit.output_hash == cached_output
        assert hit.original_output_hash == entry.output_hash
        assert hit.input_hash == entry.input_hash
        assert store.get_entry(pipeline.relabel_id, "p2").status == NodeEntryStatus.PENDING

    def test_hit_by_node_id(self, store, kinds, pipeline):
        forward_to_relabel(store, pipeline)
        node = typed_relabel(kinds, pipeline)
        entry = store.get_entry(pipeline.relabel_id, "p2")
        add_record(
            store,
            node_id=pipeline.relabel_id,
            incoming_input_hash=entry.input_hash,
            outgoing_output_hash=new_output(store, "edited"),
        )
        assert store.propagate_cache_hits(node, kinds[NodeType.LLM_RELABEL]) == 1

    def test_other_node_hash_misses(self, store, kinds, pipeline):
        forward_to_relabel(store, pipeline)
        node = typed_relabel(kinds, pipeline)
        entry = store.get_entry(pipeline.relabel_id, "p1")
        add_record(
            store,
            node_hash="some-other-hash",
            incoming_input_hash=entry.input_hash,
            outgoing_output_hash=new_output(store, "cached"),
        )
        assert store.propagate_cache_hits(node, kinds[NodeType.LLM_RELABEL]) == 0

    def test_record_shared_by_nodes_with_same_hash(self, store, kinds, build_pipeline, pipeline):
        """A record written under a hash serves every node that has that hash."""
        other = build_pipeline([make_record("x1", "q1")], project_id="project-2")
        store.mark_pending_processed(other.archive_id)
        store.sync_from_parents(other.relabel_id, [other.archive_id])
        entry = store.get_entry(other.relabel_id, "x1")
        add_record(
            store,
            node_hash="relabel-hash",
            incoming_input_hash=entry.input_hash,
            outgoing_output_hash=new_output(store, "cached"),
        )

        forward_to_relabel(store, pipeline)
        assert store.propagate_cache_hits(typed_relabel(kinds, pipeline), kinds[NodeType.LLM_RELABEL]) == 1

    def test_latest_record_wins(self, store, kinds, pipeline):
        forward_to_relabel(store, pipeline)
        node = typed_relabel(kinds, pipeline)
        entry = store.get_entry(pipeline.relabel_id, "p1")
        for content in ("first", "second"):
            add_record(
                store,
                node_hash=node.hash,
                incoming_input_hash=entry.input_hash,
                outgoing_output_hash=new_output(store, content),
            )

        store.propagate_cache_hits(node, kinds[NodeType.LLM_RELABEL])
        hit = store.get_entry(pipeline.relabel_id, "p1")
        assert hit.output_hash == hash_entry_output({"role": "assistant", "content": "second"})

    def test_duplicate_inputs_share_a_record(self, store, kinds, build_pipeline):
        pipeline = build_pipeline([make_record("p1", "same"), make_record("p2", "same")])
        forward_to_relabel(store, pipeline)
        node = typed_relabel(kinds, pipeline)
        entry = store.get_entry(pipeline.relabel_id, "p1")
        add_record(
            store,
            node_hash=node.hash,
            incoming_input_hash=entry.input_hash,
            outgoing_output_hash=new_output(store, "cached"),
        )
        assert store.propagate_cache_hits(node, kinds[NodeType.LLM_RELABEL]) == 2

    def test_only_pending_entries_are_touched(self, store, kinds, pipeline):
        forward_to_relabel(store, pipeline)
        node = typed_relabel(kinds, pipeline)
        entry = store.get_entry(pipeline.relabel_id, "p1")
        store.mark_error(entry.id, "failed earlier")
        add_record(
            store,
            node_hash=node.hash,
            incoming_input_hash=entry.input_hash,
            outgoing_output_hash=new_output(store, "cached"),
        )
        assert store.propagate_cache_hits(node, kinds[NodeType.LLM_RELABEL]) == 0
        assert store.get_entry(pipeline.relabel_id, "p1").status == NodeEntryStatus.ERROR

    def test_kind_without_cache_fields_never_hits(self, store, kinds, pipeline):
        node = TypedNode(
            id=pipeline.dataset_id,
            project_id="project-1",
            type=NodeType.DATASET,
            name="dataset",
            hash="dataset-hash",
            config=kinds[NodeType.DATASET].parse_config({}),
        )
        assert store.propagate_cache_hits(node, kinds[NodeType.DATASET]) == 0

    def test_record_needs_a_key(self, store):
        with store.session() as session:
            with pytest.raises(ValueError, match="node id or a node hash"):
                store.write_cache_record(session, persistent_id="p1")
