"""Node CRUD and graph edits (pipeline plane)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from nodepipe.build.dag import NodeGraph
from nodepipe.build.driver import enqueue_process_node
from nodepipe.core.errors import NotFoundError, PipelineError
from nodepipe.core.models import NodeType
from nodepipe.db.models import Node, NodeEdge
from nodepipe.nodes import build_kinds

if TYPE_CHECKING:
    from nodepipe.jobs.queue import JobQueue

_KINDS = build_kinds()


def create_node(
    session: Session,
    project_id: str,
    node_type: NodeType,
    name: str = "",
    config: dict[str, Any] | None = None,
) -> Node:
    """Create a node after validating its config against the kind's schema.

    The node's hash stays unset until its first sweep.
    """
    node_type = NodeType(node_type)
    config = dict(config or {})
    _KINDS[node_type].parse_config(config)

    node = Node(project_id=project_id, type=node_type, name=name)
    node.config = config
    session.add(node)
    session.flush()
    return node


def get_node(session: Session, node_id: str) -> Node:
    node = session.get(Node, node_id)
    if node is None:
        raise NotFoundError(f"Node {node_id} not found")
    return node


def list_nodes(session: Session, project_id: str) -> list[Node]:
    """Nodes of a project in build order."""
    graph = NodeGraph.load(session, project_id)
    nodes = {n.id: n for n in session.scalars(select(Node).where(Node.project_id == project_id))}
    return [nodes[node_id] for node_id in graph.topological_order()]


def connect_nodes(session: Session, parent_id: str, child_id: str) -> NodeEdge:
    """Add an edge ``parent -> child``.

    Raises:
        PipelineError: The nodes belong to different projects, the child is
            an Archive, or the edge would close a cycle.
    """
    parent = get_node(session, parent_id)
    child = get_node(session, child_id)
    if parent.project_id != child.project_id:
        raise PipelineError("Cannot connect nodes from different projects")
    if child.type == NodeType.ARCHIVE:
        raise PipelineError("Archive nodes are sources and cannot have parents")

    graph = NodeGraph.load(session, parent.project_id)
    if child_id in graph.children_of(parent_id):
        raise PipelineError(f"Edge {parent_id} -> {child_id} already exists")
    if parent_id == child_id or graph.would_create_cycle(parent_id, child_id):
        raise PipelineError(f"Edge {parent_id} -> {child_id} would create a cycle")

    edge = NodeEdge(parent_id=parent_id, child_id=child_id)
    session.add(edge)
    session.flush()
    return edge


def update_node_config(
    session: Session,
    node_id: str,
    config: dict[str, Any],
    queue: JobQueue | None = None,
) -> bool:
    """Replace a node's config.

    Returns True when a field that feeds the node hash changed. With a
    ``queue``, the change is committed and a sweep of the node is enqueued,
    invalidating its entries when the hash inputs moved.
    """
    node = get_node(session, node_id)
    kind = _KINDS[node.type]
    new_config = kind.parse_config(config)
    old_config = kind.parse_config(node.config)
    changed = kind.hashable_fields(new_config) != kind.hashable_fields(old_config)

    node.config = dict(config)
    session.flush()
    if queue is not None:
        session.commit()
        enqueue_process_node(queue, node_id, invalidate_data=changed)
    return changed
