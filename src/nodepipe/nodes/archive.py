"""Archive nodes — pipeline sources fed by bulk ingestion."""

from __future__ import annotations

import hashlib

from pydantic import BaseModel, ConfigDict, Field

from nodepipe.core.models import NodeType, Split
from nodepipe.nodes.base import NodeKind, ProcessEntryResult, TypedNode, register_kind


class ArchiveConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Fraction of entries assigned to TRAIN; None keeps the ingested split
    train_split_ratio: float | None = Field(default=None, ge=0.0, le=1.0)


def assign_split(persistent_id: str, train_split_ratio: float) -> Split:
    """Deterministically place an entry in TRAIN or TEST.

    The bucket depends only on the persistent id, so an entry keeps its
    split across re-ingestion and reprocessing.
    """
    bucket = int(hashlib.sha256(persistent_id.encode()).hexdigest()[:8], 16) / 2**32
    return Split.TRAIN if bucket < train_split_ratio else Split.TEST


@register_kind
class ArchiveKind(NodeKind):
    """Assigns splits to ingested entries. Always recomputes; no caching."""

    node_type = NodeType.ARCHIVE
    config_schema = ArchiveConfig

    def hashable_fields(self, config: ArchiveConfig) -> dict:
        return {"train_split_ratio": config.train_split_ratio}

    def concurrency(self, node: TypedNode) -> int:
        return 4

    def process_entry(self, node, entry) -> ProcessEntryResult:
        ratio = node.config.train_split_ratio
        if ratio is None:
            return ProcessEntryResult.processed()
        return ProcessEntryResult.processed(split=assign_split(entry.persistent_id, ratio))
