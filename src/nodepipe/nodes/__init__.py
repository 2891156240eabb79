"""Node kinds. Importing this package registers every kind."""

from nodepipe.nodes import archive, dataset, llm_relabel, manual_relabel  # noqa: F401
from nodepipe.nodes.base import (
    NodeKind,
    ProcessEntryResult,
    TypedNode,
    build_kinds,
    register_kind,
)

__all__ = [
    "NodeKind",
    "ProcessEntryResult",
    "TypedNode",
    "build_kinds",
    "register_kind",
]
