"""Database models for nodepipe.

Pipeline plane:
- Node / NodeEdge: pipeline stages and the DAG between them
- NodeEntry: one logical row as it exists at one node
- EntryInput / EntryOutput: content-addressed request and response payloads
- CachedProcessedEntry: memoized results reusable by hash-matching nodes

Completion plane:
- Experiment, PromptVariant, TestScenario: what a cell is built from
- ScenarioVariantCell: one variant x scenario pairing awaiting a completion
- ModelOutput: the immutable result of a successful completion
- Evaluation / OutputEvaluation: checks run against each model output
"""

import json
from datetime import datetime
from typing import Any, ClassVar
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from nodepipe.core.models import (
    EvaluationMatchType,
    NodeEntryStatus,
    NodeType,
    RetrievalStatus,
    Split,
)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all nodepipe models."""

    type_annotation_map: ClassVar[dict[type, Any]] = {}


class Node(Base):
    """One pipeline stage."""

    __tablename__ = "nodes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    type: Mapped[NodeType] = mapped_column(nullable=False)
    config_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Serialized Fingerprint behind `hash`, kept to explain invalidations
    fingerprint_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    @property
    def config(self) -> dict[str, Any]:
        """Get deserialized node config."""
        return json.loads(self.config_json)  # type: ignore[no-any-return]

    @config.setter
    def config(self, value: dict[str, Any]) -> None:
        """Set serialized node config."""
        self.config_json = json.dumps(value, sort_keys=True)

    @property
    def fingerprint(self) -> dict[str, Any]:
        return json.loads(self.fingerprint_json) if self.fingerprint_json else {}

    __table_args__ = (Index("idx_nodes_project", "project_id"),)


class NodeEdge(Base):
    """Directed edge from an upstream node to a downstream node."""

    __tablename__ = "node_edges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    parent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False
    )
    child_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("parent_id", "child_id", name="uq_node_edge"),
        Index("idx_node_edges_parent", "parent_id"),
        Index("idx_node_edges_child", "child_id"),
    )


class NodeEntry(Base):
    """One logical row at one node. Unique per (node_id, persistent_id)."""

    __tablename__ = "node_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    node_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False
    )
    persistent_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[NodeEntryStatus] = mapped_column(
        nullable=False, default=NodeEntryStatus.PENDING
    )
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    split: Mapped[Split] = mapped_column(nullable=False, default=Split.TRAIN)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Fingerprint of the parent row this entry was last forwarded from
    upstream_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("node_id", "persistent_id", name="uq_node_entry_persistent"),
        Index("idx_node_entries_node_status", "node_id", "status"),
        Index("idx_node_entries_input_hash", "input_hash"),
    )


class EntryInput(Base):
    """Content-addressed request payload of an entry."""

    __tablename__ = "entry_inputs"

    hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    messages_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    tool_choice_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    tools_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_format_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Deserialize into the request fields used by transforms."""
        return {
            "messages": json.loads(self.messages_json),
            "tool_choice": _loads(self.tool_choice_json),
            "tools": _loads(self.tools_json),
            "response_format": _loads(self.response_format_json),
        }


class EntryOutput(Base):
    """Content-addressed response message of an entry."""

    __tablename__ = "entry_outputs"

    hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    output_json: Mapped[str] = mapped_column(Text, nullable=False)

    @property
    def output(self) -> dict[str, Any]:
        return json.loads(self.output_json)  # type: ignore[no-any-return]


class CachedProcessedEntry(Base):
    """Memoized result of processing one entry.

    Keyed by either ``node_hash`` (reusable by any node with that hash) or
    ``node_id`` (operator edits bound to one node). Never mutated.
    """

    __tablename__ = "cached_processed_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    node_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    persistent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    incoming_input_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    incoming_output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outgoing_input_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outgoing_output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outgoing_split: Mapped[Split | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_cached_entries_node_hash", "node_hash"),
        Index("idx_cached_entries_node_id", "node_id"),
        Index("idx_cached_entries_incoming_input", "incoming_input_hash"),
    )


class Experiment(Base):
    """A grid of prompt variants against test scenarios."""

    __tablename__ = "experiments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    label: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )


class PromptVariant(Base):
    """A prompt template and the provider it is sent to."""

    __tablename__ = "prompt_variants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experiment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    model_provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # JSON model input with Jinja2 placeholders for scenario variables
    prompt_template: Mapped[str] = mapped_column(Text, nullable=False)
    visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )


class TestScenario(Base):
    """Variable values substituted into every variant's prompt template."""

    __tablename__ = "test_scenarios"
    __test__ = False  # not a pytest class

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experiment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False
    )
    variable_values_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    sort_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def variable_values(self) -> dict[str, Any]:
        return json.loads(self.variable_values_json)  # type: ignore[no-any-return]

    @variable_values.setter
    def variable_values(self, value: dict[str, Any]) -> None:
        self.variable_values_json = json.dumps(value)


class ScenarioVariantCell(Base):
    """One (prompt variant x test scenario) pairing awaiting a completion.

    Variant and scenario ids are plain columns: either side can be removed
    while the cell still exists, which the completion engine reports as 404.
    """

    __tablename__ = "scenario_variant_cells"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    prompt_variant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    test_scenario_id: Mapped[str] = mapped_column(String(36), nullable=False)
    retrieval_status: Mapped[RetrievalStatus] = mapped_column(
        nullable=False, default=RetrievalStatus.PENDING
    )
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    model_output: Mapped["ModelOutput | None"] = relationship(
        "ModelOutput", back_populates="cell", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("prompt_variant_id", "test_scenario_id", name="uq_cell_variant_scenario"),
        Index("idx_cells_status", "retrieval_status"),
    )


class ModelOutput(Base):
    """Result of one successful completion for a cell."""

    __tablename__ = "model_outputs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    cell_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scenario_variant_cells.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    # Hash of the resolved prompt, shared by identical prompts across cells
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    output_json: Mapped[str] = mapped_column(Text, nullable=False)
    time_to_complete_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    cell: Mapped[ScenarioVariantCell] = relationship(
        "ScenarioVariantCell", back_populates="model_output"
    )

    @property
    def output(self) -> Any:
        return json.loads(self.output_json)

    __table_args__ = (Index("idx_model_outputs_input_hash", "input_hash"),)


class Evaluation(Base):
    """A string-match check applied to every output of an experiment."""

    __tablename__ = "evaluations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experiment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False
    )
    label: Mapped[str] = mapped_column(String(256), nullable=False)
    # Jinja2 template rendered with the scenario's variables
    match_string: Mapped[str] = mapped_column(Text, nullable=False)
    match_type: Mapped[EvaluationMatchType] = mapped_column(nullable=False)


class OutputEvaluation(Base):
    """Result of one evaluation against one model output."""

    __tablename__ = "output_evaluations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    model_output_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("model_outputs.id", ondelete="CASCADE"), nullable=False
    )
    evaluation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("evaluations.id", ondelete="CASCADE"), nullable=False
    )
    result: Mapped[float] = mapped_column(Float, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("model_output_id", "evaluation_id", name="uq_output_evaluation"),
    )


def _loads(raw: str | None) -> Any:
    return json.loads(raw) if raw is not None else None
