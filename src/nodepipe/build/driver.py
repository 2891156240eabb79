"""Pipeline driver — sweep a node and everything downstream of it.

A sweep visits the invoked node and its downstream closure in topological
order, each node exactly once. For every node it forwards parent rows,
recomputes the node hash, invalidates entries when the hash moved, lets the
kind resolve entries up front, replays cached results, and finally transforms
the remaining PENDING entries batch by batch under the kind's concurrency
limit.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from nodepipe.build.dag import NodeGraph
from nodepipe.build.entry_store import EntryRow, EntryStore
from nodepipe.build.fingerprint import Fingerprint, compute_node_fingerprint
from nodepipe.core.errors import InvariantViolation, NotFoundError
from nodepipe.core.logging import PipelineLogger
from nodepipe.core.models import NodeEntryStatus, NodeType
from nodepipe.db.models import Node
from nodepipe.nodes import NodeKind, ProcessEntryResult, TypedNode, build_kinds

if TYPE_CHECKING:
    from nodepipe.jobs.queue import JobQueue
    from nodepipe.llm.providers import ProviderRegistry

logger = logging.getLogger(__name__)

PROCESS_NODE_TASK = "process_node"

# Called with (node_id, delay_seconds) when rate-limited entries need a later sweep
Reenqueue = Callable[[str, float], None]


@dataclass
class SweepResult:
    """Summary of one driver invocation."""

    root_node_id: str
    order: list[str] = field(default_factory=list)
    # Nodes skipped because another run was already processing them
    coalesced: list[str] = field(default_factory=list)
    deferred: dict[str, int] = field(default_factory=dict)
    total_time: float = 0.0
    run_log: dict = field(default_factory=dict)


def process_node_job_key(node_id: str) -> str:
    return f"{PROCESS_NODE_TASK}:{node_id}"


def enqueue_process_node(
    queue: JobQueue,
    node_id: str,
    invalidate_data: bool = False,
    delay: float = 0.0,
) -> None:
    """Submit a sweep of ``node_id`` under its job key."""
    queue.enqueue(
        PROCESS_NODE_TASK,
        {"node_id": node_id, "invalidate_data": invalidate_data},
        key=process_node_job_key(node_id),
        delay=delay,
    )


class PipelineDriver:
    """Runs node sweeps against one database.

    Args:
        session_factory: Factory for sessions bound to the pipeline database.
        kinds: Node kinds by type. Built from ``providers`` when omitted.
        providers: Provider registry handed to the kinds.
        logger_factory: Creates the structured logger for each sweep.
        reenqueue: Schedules a later sweep of a node with deferred entries.
        rate_limit_delay: Seconds passed to ``reenqueue``.
        read_batch_size: Overrides every kind's batch size when set.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        kinds: dict[NodeType, NodeKind] | None = None,
        providers: ProviderRegistry | None = None,
        logger_factory: Callable[[], PipelineLogger] | None = None,
        reenqueue: Reenqueue | None = None,
        rate_limit_delay: float = 30.0,
        read_batch_size: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.store = EntryStore(session_factory)
        self.kinds = kinds if kinds is not None else build_kinds(providers)
        self.logger_factory = logger_factory or PipelineLogger
        self.reenqueue = reenqueue
        self.rate_limit_delay = rate_limit_delay
        self.read_batch_size = read_batch_size

        self._lock = threading.Lock()
        self._active: set[str] = set()
        # node id -> whether a coalesced request asked for invalidation
        self._rerun: dict[str, bool] = {}

    # -- Public API --

    def process(self, node_id: str, invalidate_data: bool = False) -> SweepResult:
        """Sweep ``node_id`` and its downstream closure.

        ``invalidate_data`` forces every entry of ``node_id`` back to PENDING
        even when its hash is unchanged. Downstream nodes are invalidated only
        through their own hash changes.
        """
        start = time.time()
        with self.store.session() as session:
            root = session.get(Node, node_id)
            if root is None:
                raise NotFoundError(f"Node {node_id} not found")
            graph = NodeGraph.load(session, root.project_id)
        order = graph.downstream_order(node_id)

        result = SweepResult(root_node_id=node_id)
        run_logger = self.logger_factory()
        run_logger.run_start(node_id, len(order), invalidate_data)
        try:
            for position, current in enumerate(order):
                invalidate = invalidate_data and current == node_id
                if not self._claim(current, invalidate):
                    logger.debug("Node %s already processing; request coalesced", current)
                    result.coalesced.append(current)
                    if current == node_id:
                        # The active run sweeps the downstream closure itself
                        break
                    continue
                try:
                    while True:
                        deferred = self._sweep_node(
                            current, graph.parents_of(current), invalidate, position, run_logger
                        )
                        rerun = self._finish_or_rerun(current)
                        if rerun is None:
                            break
                        invalidate = rerun
                except BaseException:
                    self._release(current)
                    raise

                result.order.append(current)
                if deferred:
                    result.deferred[current] = deferred
                    self._schedule_retry(current)
        finally:
            result.total_time = time.time() - start
            run_logger.run_finish(result.total_time)
            result.run_log = run_logger.run_log.to_dict()
        return result

    def is_processing(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._active

    # -- Coalescing --

    def _claim(self, node_id: str, invalidate: bool) -> bool:
        """Mark a node active, or record a re-run request if it already is."""
        with self._lock:
            if node_id in self._active:
                self._rerun[node_id] = self._rerun.get(node_id, False) or invalidate
                return False
            self._active.add(node_id)
            return True

    def _finish_or_rerun(self, node_id: str) -> bool | None:
        """Release the node unless a request arrived while it was processing.

        Returns the pending request's invalidate flag, or None once released.
        """
        with self._lock:
            rerun = self._rerun.pop(node_id, None)
            if rerun is None:
                self._active.discard(node_id)
            return rerun

    def _invalidation_requested(self, node_id: str) -> bool:
        with self._lock:
            return self._rerun.get(node_id, False)

    def _release(self, node_id: str) -> None:
        with self._lock:
            self._active.discard(node_id)
            self._rerun.pop(node_id, None)

    # -- Per-node sweep --

    def _sweep_node(
        self,
        node_id: str,
        parent_ids: list[str],
        invalidate: bool,
        position: int,
        run_logger: PipelineLogger,
    ) -> int:
        """Bring one node to IDLE. Returns the number of deferred entries."""
        store = self.store
        store.release_processing(node_id)

        with store.session() as session:
            node = session.get(Node, node_id)
            if node is None:
                raise NotFoundError(f"Node {node_id} not found")
            kind = self.kinds.get(node.type)
            if kind is None:
                raise InvariantViolation(f"No node kind for type {node.type}")
            typed = kind.resolve(node)
        run_logger.node_start(node_id, typed.type.value, position)

        synced = store.sync_from_parents(node_id, parent_ids)
        run_logger.entries_synced(node_id, synced.created, synced.updated, synced.deleted)

        typed, reasons = self._refresh_hash(typed, kind, parent_ids)
        if reasons or invalidate:
            count = store.invalidate_node(node_id, parent_ids)
            run_logger.node_invalidated(node_id, reasons or ["invalidation requested"], count)

        skipped = kind.before_processing(typed, store)
        hits = store.propagate_cache_hits(typed, kind)
        run_logger.cache_hits(node_id, hits, skipped)

        batch_size = self.read_batch_size or kind.read_batch_size
        deferred: set[str] = set()
        while not self._invalidation_requested(node_id):
            batch = store.list_pending(node_id, batch_size, exclude=deferred)
            if not batch:
                break
            deferred.update(self._run_batch(typed, kind, batch, run_logger))

        run_logger.node_finish(node_id)
        return len(deferred)

    def _refresh_hash(
        self,
        node: TypedNode,
        kind: NodeKind,
        parent_ids: list[str],
    ) -> tuple[TypedNode, list[str]]:
        """Recompute the node hash; persist it and explain the change if it moved."""
        with self.store.session() as session:
            parent_hashes = (
                session.scalars(select(Node.hash).where(Node.id.in_(parent_ids))).all()
                if parent_ids
                else []
            )
            fingerprint = compute_node_fingerprint(
                node.type.value, kind.hashable_fields(node.config), parent_hashes
            )
            if fingerprint.digest == node.hash:
                return node, []

            row = session.get(Node, node.id)
            previous = Fingerprint.from_dict(row.fingerprint) if row is not None else None
            reasons = fingerprint.explain_diff(previous) if node.hash else ["first sweep"]
            if row is not None:
                row.hash = fingerprint.digest
                row.fingerprint_json = json.dumps(fingerprint.to_dict())
        logger.info("Node %s hash changed: %s", node.id, ", ".join(reasons))
        return replace(node, hash=fingerprint.digest), reasons

    def _run_batch(
        self,
        node: TypedNode,
        kind: NodeKind,
        batch: list[EntryRow],
        run_logger: PipelineLogger,
    ) -> set[str]:
        """Transform one batch, waiting for all of it. Returns deferred entry ids."""
        self.store.mark_processing(entry.id for entry in batch)
        workers = max(1, min(kind.concurrency(node), len(batch)))
        run_logger.batch_start(node.id, len(batch), workers)

        results: list[tuple[EntryRow, ProcessEntryResult]] = []
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._transform, kind, node, entry): entry for entry in batch}
            for future in as_completed(futures):
                results.append((futures[future], future.result()))

        deferred: set[str] = set()
        for entry, outcome in sorted(results, key=lambda pair: pair[0].persistent_id):
            self.store.complete_entry(entry, node, kind, outcome)
            run_logger.entry_result(
                node.id,
                entry.persistent_id,
                outcome.status.value,
                error=outcome.error,
                model_calls=outcome.model_calls,
                tokens=outcome.tokens,
            )
            if outcome.status == NodeEntryStatus.PENDING:
                deferred.add(entry.id)
        return deferred

    def _transform(self, kind: NodeKind, node: TypedNode, entry: EntryRow) -> ProcessEntryResult:
        try:
            return kind.process_entry(node, entry)
        except InvariantViolation:
            raise
        except Exception as exc:
            logger.warning("Transform failed for %s at node %s: %s", entry.persistent_id, node.id, exc)
            return ProcessEntryResult.failed(f"{type(exc).__name__}: {exc}")

    def _schedule_retry(self, node_id: str) -> None:
        if self.reenqueue is None:
            logger.info("Node %s has rate-limited entries and no queue to retry them", node_id)
            return
        self.reenqueue(node_id, self.rate_limit_delay)

