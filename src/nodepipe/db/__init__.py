"""Database models and engine for nodepipe."""

from nodepipe.db.engine import (
    get_engine,
    get_session,
    get_session_factory,
    init_database,
    reset_engines,
    session_scope,
)
from nodepipe.db.models import (
    Base,
    CachedProcessedEntry,
    EntryInput,
    EntryOutput,
    Evaluation,
    Experiment,
    ModelOutput,
    Node,
    NodeEdge,
    NodeEntry,
    OutputEvaluation,
    PromptVariant,
    ScenarioVariantCell,
    TestScenario,
)

__all__ = [
    "Base",
    "CachedProcessedEntry",
    "EntryInput",
    "EntryOutput",
    "Evaluation",
    "Experiment",
    "ModelOutput",
    "Node",
    "NodeEdge",
    "NodeEntry",
    "OutputEvaluation",
    "PromptVariant",
    "ScenarioVariantCell",
    "TestScenario",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_database",
    "reset_engines",
    "session_scope",
]
