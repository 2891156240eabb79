"""Nodepipe - incremental processing of chat-style records through typed LLM nodes.

Usage:
    from nodepipe import PipelineDriver, get_session_factory, init_database

    init_database()
    driver = PipelineDriver(get_session_factory())
    result = driver.process(archive_node_id)
"""

from nodepipe.build.driver import PipelineDriver, SweepResult, enqueue_process_node
from nodepipe.build.entry_store import EntryStore
from nodepipe.completions.engine import CellRunResult, CompletionEngine, queue_query_model
from nodepipe.core.models import NodeEntryStatus, NodeType, RetrievalStatus, Split
from nodepipe.db import get_session, get_session_factory, init_database
from nodepipe.jobs.queue import JobQueue

__version__ = "0.1.0"

__all__ = [
    "CellRunResult",
    "CompletionEngine",
    "EntryStore",
    "JobQueue",
    "NodeEntryStatus",
    "NodeType",
    "PipelineDriver",
    "RetrievalStatus",
    "Split",
    "SweepResult",
    "enqueue_process_node",
    "get_session",
    "get_session_factory",
    "init_database",
    "queue_query_model",
]
