"""Base node kind interface and registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import pydantic
from pydantic import BaseModel

from nodepipe.core.errors import InvariantViolation, ValidationError
from nodepipe.core.models import CacheMatchField, CacheWriteField, NodeEntryStatus, NodeType, Split

if TYPE_CHECKING:
    from nodepipe.build.entry_store import EntryRow, EntryStore
    from nodepipe.db.models import Node
    from nodepipe.llm.providers import ProviderRegistry

DEFAULT_READ_BATCH_SIZE = 50


@dataclass(frozen=True)
class TypedNode:
    """A node with its configuration validated against its kind's schema."""

    id: str
    project_id: str
    type: NodeType
    name: str
    hash: str | None
    config: Any


@dataclass
class ProcessEntryResult:
    """Outcome of transforming one entry.

    ``output`` and ``split`` are only meaningful for PROCESSED results;
    ``None`` leaves the entry's current value untouched.
    """

    status: NodeEntryStatus
    output: Any | None = None
    split: Split | None = None
    error: str | None = None
    model_calls: int = 0
    tokens: int = 0

    @classmethod
    def processed(cls, output: Any | None = None, split: Split | None = None) -> ProcessEntryResult:
        return cls(status=NodeEntryStatus.PROCESSED, output=output, split=split)

    @classmethod
    def deferred(cls, error: str) -> ProcessEntryResult:
        """Send the entry back to the queue for a later sweep."""
        return cls(status=NodeEntryStatus.PENDING, error=error)

    @classmethod
    def failed(cls, error: str) -> ProcessEntryResult:
        return cls(status=NodeEntryStatus.ERROR, error=error)


class NodeKind(ABC):
    """Abstract base class for all node kinds.

    A kind declares how its nodes are configured, which fields make its
    output change, how entries are matched against and written to the
    processed-entry cache, and how a single entry is transformed.
    """

    node_type: ClassVar[NodeType]
    config_schema: ClassVar[type[BaseModel]]
    cache_match_fields: ClassVar[tuple[CacheMatchField, ...]] = ()
    cache_write_fields: ClassVar[tuple[CacheWriteField, ...]] = ()
    # Whether successful transforms become reusable cache records
    write_cache_on_process: ClassVar[bool] = False
    read_batch_size: ClassVar[int] = DEFAULT_READ_BATCH_SIZE

    def __init__(self, providers: ProviderRegistry | None = None) -> None:
        self.providers = providers

    @property
    def uses_cache(self) -> bool:
        return bool(self.cache_match_fields and self.cache_write_fields)

    def parse_config(self, config: dict[str, Any]) -> BaseModel:
        """Validate raw config against the kind's schema."""
        try:
            return self.config_schema.model_validate(config)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid {self.node_type.value} config: {exc}") from exc

    def resolve(self, node: Node) -> TypedNode:
        return TypedNode(
            id=node.id,
            project_id=node.project_id,
            type=node.type,
            name=node.name,
            hash=node.hash,
            config=self.parse_config(node.config),
        )

    def hashable_fields(self, config: Any) -> dict[str, Any]:
        """Config fields that change this kind's output. Default: none."""
        return {}

    def concurrency(self, node: TypedNode) -> int:
        """Maximum number of entries transformed at once."""
        return 1

    def before_processing(self, node: TypedNode, store: EntryStore) -> int:
        """Hook run once per invocation before cache propagation.

        Returns the number of entries it resolved.
        """
        return 0

    @abstractmethod
    def process_entry(self, node: TypedNode, entry: EntryRow) -> ProcessEntryResult:
        """Transform one entry."""
        ...


# Kind registry
_KINDS: dict[NodeType, type[NodeKind]] = {}


def register_kind(cls: type[NodeKind]) -> type[NodeKind]:
    """Decorator to register a node kind class."""
    if bool(cls.cache_match_fields) != bool(cls.cache_write_fields):
        raise InvariantViolation(
            f"{cls.__name__} must declare cache match fields and cache write fields together"
        )
    if cls.write_cache_on_process and not cls.cache_write_fields:
        raise InvariantViolation(f"{cls.__name__} writes cache records but declares no cache fields")
    if cls.node_type in _KINDS and _KINDS[cls.node_type] is not cls:
        raise InvariantViolation(f"Node type {cls.node_type.value} registered twice")
    _KINDS[cls.node_type] = cls
    return cls


def build_kinds(providers: ProviderRegistry | None = None) -> dict[NodeType, NodeKind]:
    """Instantiate one kind per node type. Every node type must be covered."""
    missing = [t.value for t in NodeType if t not in _KINDS]
    if missing:
        raise InvariantViolation(f"No node kind registered for: {missing}")
    return {node_type: cls(providers) for node_type, cls in _KINDS.items()}
