"""Tests for DAG resolution over pipeline nodes."""

from __future__ import annotations

import pytest

from nodepipe.build.dag import NodeGraph
from nodepipe.core.errors import NotFoundError, PipelineError
from nodepipe.core.models import NodeType
from nodepipe.db.engine import session_scope
from nodepipe.services.nodes import connect_nodes, create_node


class TestNodeGraph:
    def test_downstream_order_linear(self):
        graph = NodeGraph(["a", "b", "c"], [("a", "b"), ("b", "c")])
        assert graph.downstream_order("a") == ["a", "b", "c"]
        assert graph.downstream_order("b") == ["b", "c"]
        assert graph.downstream_order("c") == ["c"]

    def test_downstream_order_diamond(self):
        """Diamond dependency, each node exactly once and after its parents."""
        graph = NodeGraph(
            ["src", "left", "right", "sink"],
            [("src", "left"), ("src", "right"), ("left", "sink"), ("right", "sink")],
        )
        order = graph.downstream_order("src")
        assert len(order) == len(set(order)) == 4
        assert order[0] == "src"
        assert order[-1] == "sink"

    def test_downstream_order_ignores_unrelated_parents(self):
        """A parent outside the closure does not block its child."""
        graph = NodeGraph(["a", "b", "c"], [("a", "c"), ("b", "c")])
        assert graph.downstream_order("b") == ["b", "c"]

    def test_topological_order_full(self):
        graph = NodeGraph(["c", "b", "a"], [("a", "b"), ("b", "c")])
        assert graph.topological_order() == ["a", "b", "c"]

    def test_cycle_detection(self):
        graph = NodeGraph(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "a")])
        with pytest.raises(PipelineError, match="circular"):
            graph.topological_order()

    def test_unknown_edge_endpoint(self):
        with pytest.raises(PipelineError, match="unknown node"):
            NodeGraph(["a"], [("a", "missing")])

    def test_unknown_node(self):
        graph = NodeGraph(["a"], [])
        with pytest.raises(NotFoundError):
            graph.downstream_order("missing")

    def test_would_create_cycle(self):
        graph = NodeGraph(["a", "b", "c"], [("a", "b"), ("b", "c")])
        assert graph.would_create_cycle("c", "a") is True
        assert graph.would_create_cycle("a", "c") is False

    def test_parents_and_children(self):
        graph = NodeGraph(["a", "b", "c"], [("a", "c"), ("b", "c")])
        assert graph.parents_of("c") == ["a", "b"]
        assert graph.children_of("a") == ["c"]


class TestGraphFromDatabase:
    def test_load_project(self, session_factory):
        with session_scope(session_factory) as session:
            archive = create_node(session, "p1", NodeType.ARCHIVE)
            relabel = create_node(session, "p1", NodeType.LLM_RELABEL)
            other = create_node(session, "p2", NodeType.ARCHIVE)
            connect_nodes(session, archive.id, relabel.id)

            graph = NodeGraph.load(session, "p1")

        assert graph.node_ids == {archive.id, relabel.id}
        assert other.id not in graph.node_ids
        assert graph.downstream_order(archive.id) == [archive.id, relabel.id]

    def test_connect_rejects_cycle(self, session_factory):
        with session_scope(session_factory) as session:
            a = create_node(session, "p1", NodeType.LLM_RELABEL)
            b = create_node(session, "p1", NodeType.DATASET)
            connect_nodes(session, a.id, b.id)
            with pytest.raises(PipelineError, match="cycle"):
                connect_nodes(session, b.id, a.id)

    def test_connect_rejects_archive_child(self, session_factory):
        with session_scope(session_factory) as session:
            a = create_node(session, "p1", NodeType.ARCHIVE)
            b = create_node(session, "p1", NodeType.ARCHIVE)
            with pytest.raises(PipelineError, match="sources"):
                connect_nodes(session, a.id, b.id)

    def test_connect_rejects_cross_project(self, session_factory):
        with session_scope(session_factory) as session:
            a = create_node(session, "p1", NodeType.ARCHIVE)
            b = create_node(session, "p2", NodeType.DATASET)
            with pytest.raises(PipelineError, match="different projects"):
                connect_nodes(session, a.id, b.id)
