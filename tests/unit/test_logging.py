"""Unit tests for structured sweep logging."""

from __future__ import annotations

import io
import json

from rich.console import Console

from nodepipe.core.logging import NodeLog, PipelineLogger, RunLog, Verbosity


def quiet_console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, width=200), buffer


def read_events(path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestNodeLog:
    def test_creation_defaults(self):
        node = NodeLog(node_id="n1")
        assert node.cache_hits == 0
        assert node.model_calls == 0
        assert node.invalidated is False
        assert node.time_seconds == 0.0

    def test_to_dict(self):
        node = NodeLog(node_id="n1", node_type="LLMRelabel", processed=3, tokens_used=45)
        data = node.to_dict()
        assert data["node_id"] == "n1"
        assert data["node_type"] == "LLMRelabel"
        assert data["processed"] == 3
        assert data["tokens_used"] == 45


class TestRunLog:
    def test_finalize_totals(self):
        run_log = RunLog(run_id="r")
        run_log.get_or_create_node("a").model_calls = 2
        run_log.get_or_create_node("a").cache_hits = 1
        run_log.get_or_create_node("b").model_calls = 3
        run_log.get_or_create_node("b").errors = 1
        run_log.get_or_create_node("b").tokens_used = 30

        run_log.finalize()

        assert run_log.total_model_calls == 5
        assert run_log.total_cache_hits == 1
        assert run_log.total_errors == 1
        assert run_log.total_tokens == 30

    def test_to_dict(self):
        run_log = RunLog(run_id="r")
        run_log.get_or_create_node("a")
        data = run_log.to_dict()
        assert data["run_id"] == "r"
        assert set(data["nodes"]) == {"a"}


class TestPipelineLogger:
    def test_jsonl_events(self, tmp_path):
        console, _ = quiet_console()
        logger = PipelineLogger(logs_dir=tmp_path, console=console)

        logger.run_start("n1", 1, invalidate=False)
        logger.node_start("n1", "LLMRelabel", 0)
        logger.entries_synced("n1", 2, 0, 0)
        logger.cache_hits("n1", 1)
        logger.batch_start("n1", 1, 1)
        logger.entry_result("n1", "p1", "PROCESSED", model_calls=1, tokens=15)
        logger.node_finish("n1")
        logger.run_finish(0.5)

        events = read_events(logger.log_path)
        assert [e["event"] for e in events] == [
            "run_start",
            "node_start",
            "entries_synced",
            "cache_hits",
            "batch_start",
            "entry_result",
            "node_finish",
            "run_finish",
        ]
        assert all("timestamp" in e for e in events)
        assert events[-1]["total_model_calls"] == 1
        assert events[-1]["total_tokens"] == 15

    def test_entry_results_counted(self):
        console, _ = quiet_console()
        logger = PipelineLogger(console=console)

        logger.entry_result("n1", "p1", "PROCESSED")
        logger.entry_result("n1", "p2", "PENDING", error="Rate limit exceeded")
        logger.entry_result("n1", "p3", "ERROR", error="Bad request")

        node = logger.run_log.nodes["n1"]
        assert (node.processed, node.deferred, node.errors) == (1, 1, 1)

    def test_invalidation_recorded(self, tmp_path):
        console, _ = quiet_console()
        logger = PipelineLogger(logs_dir=tmp_path, console=console)
        logger.node_invalidated("n1", ["config changed"], 3)
        logger.close()

        assert logger.run_log.nodes["n1"].invalidated is True
        event = read_events(logger.log_path)[0]
        assert event["reasons"] == ["config changed"]
        assert event["entries"] == 3

    def test_default_verbosity_is_quiet(self):
        console, buffer = quiet_console()
        logger = PipelineLogger(console=console)
        logger.node_start("n1", "Dataset", 0)
        logger.entry_result("n1", "p1", "PROCESSED")
        assert buffer.getvalue() == ""

    def test_debug_verbosity_prints_entries(self):
        console, buffer = quiet_console()
        logger = PipelineLogger(verbosity=Verbosity.DEBUG, console=console)
        logger.node_start("n1", "Dataset", 0)
        logger.entry_result("n1", "p1", "ERROR", error="boom")
        output = buffer.getvalue()
        assert "Processing node" in output
        assert "p1" in output
        assert "boom" in output

    def test_no_logs_dir_writes_nothing(self):
        logger = PipelineLogger(console=quiet_console()[0])
        logger.run_finish(0.1)
        assert logger.log_path is None
