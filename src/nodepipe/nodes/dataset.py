"""Dataset nodes — the terminal collection of entries used for training."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from nodepipe.core.models import NodeType
from nodepipe.nodes.base import NodeKind, ProcessEntryResult, TypedNode, register_kind


class DatasetConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")


@register_kind
class DatasetKind(NodeKind):
    node_type = NodeType.DATASET
    config_schema = DatasetConfig

    def concurrency(self, node: TypedNode) -> int:
        return 4

    def process_entry(self, node, entry) -> ProcessEntryResult:
        return ProcessEntryResult.processed()
