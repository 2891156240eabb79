"""DAG resolution — adjacency lookup and topological sweeps over pipeline nodes."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from nodepipe.core.errors import NotFoundError, PipelineError
from nodepipe.db.models import Node, NodeEdge


class NodeGraph:
    """Explicit directed acyclic graph of node ids."""

    def __init__(self, node_ids: Iterable[str], edges: Iterable[tuple[str, str]]) -> None:
        self.node_ids: set[str] = set(node_ids)
        self.children: dict[str, list[str]] = {n: [] for n in self.node_ids}
        self.parents: dict[str, list[str]] = {n: [] for n in self.node_ids}
        for parent, child in edges:
            for endpoint in (parent, child):
                if endpoint not in self.node_ids:
                    raise PipelineError(f"Edge {parent} -> {child} references unknown node {endpoint}")
            self.children[parent].append(child)
            self.parents[child].append(parent)
        for adjacency in (self.children, self.parents):
            for ids in adjacency.values():
                ids.sort()

    @classmethod
    def load(cls, session: Session, project_id: str) -> NodeGraph:
        """Build the graph of every node in a project."""
        node_ids = session.scalars(select(Node.id).where(Node.project_id == project_id)).all()
        edges = session.execute(
            select(NodeEdge.parent_id, NodeEdge.child_id)
            .join(Node, Node.id == NodeEdge.child_id)
            .where(Node.project_id == project_id)
        ).all()
        return cls(node_ids, [(p, c) for p, c in edges])

    def parents_of(self, node_id: str) -> list[str]:
        self._require(node_id)
        return list(self.parents[node_id])

    def children_of(self, node_id: str) -> list[str]:
        self._require(node_id)
        return list(self.children[node_id])

    def topological_order(self) -> list[str]:
        """Topological sort of every node — raises on cycles."""
        return self._kahn(self.node_ids)

    def downstream_order(self, node_id: str) -> list[str]:
        """Return ``node_id`` and everything reachable from it, in build order.

        Each node appears exactly once, after all of its reachable parents.
        """
        self._require(node_id)
        reachable: set[str] = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            if current in reachable:
                continue
            reachable.add(current)
            stack.extend(self.children[current])
        return self._kahn(reachable)

    def would_create_cycle(self, parent_id: str, child_id: str) -> bool:
        """True if adding ``parent_id -> child_id`` closes a cycle."""
        self._require(parent_id)
        self._require(child_id)
        return parent_id in self.downstream_order(child_id)

    def _kahn(self, subset: set[str]) -> list[str]:
        in_degree = {
            name: sum(1 for p in self.parents[name] if p in subset) for name in subset
        }
        queue: deque[str] = deque(sorted(n for n, d in in_degree.items() if d == 0))

        order: list[str] = []
        while queue:
            name = queue.popleft()
            order.append(name)
            for child in self.children[name]:
                if child not in subset:
                    continue
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(subset):
            remaining = subset - set(order)
            raise PipelineError(f"Pipeline has circular dependencies involving: {sorted(remaining)}")
        return order

    def _require(self, node_id: str) -> None:
        if node_id not in self.node_ids:
            raise NotFoundError(f"Node {node_id} not found")
