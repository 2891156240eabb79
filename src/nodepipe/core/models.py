"""Shared enumerations for nodes, entries and cells."""

from __future__ import annotations

from enum import Enum


class NodeType(str, Enum):
    """Closed set of processing kinds a node can have."""

    ARCHIVE = "Archive"
    LLM_RELABEL = "LLMRelabel"
    MANUAL_RELABEL = "ManualRelabel"
    DATASET = "Dataset"


class NodeEntryStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    ERROR = "ERROR"


class Split(str, Enum):
    TRAIN = "TRAIN"
    TEST = "TEST"


class RetrievalStatus(str, Enum):
    """Lifecycle of a scenario/variant cell awaiting a model completion."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


class CacheMatchField(str, Enum):
    """Entry columns a cache record can be matched on."""

    INCOMING_INPUT_HASH = "incoming_input_hash"
    INCOMING_OUTPUT_HASH = "incoming_output_hash"
    PERSISTENT_ID = "persistent_id"


class CacheWriteField(str, Enum):
    """Entry columns a cache hit rewrites."""

    OUTGOING_INPUT_HASH = "outgoing_input_hash"
    OUTGOING_OUTPUT_HASH = "outgoing_output_hash"
    OUTGOING_SPLIT = "outgoing_split"


class EvaluationMatchType(str, Enum):
    CONTAINS = "CONTAINS"
    DOES_NOT_CONTAIN = "DOES_NOT_CONTAIN"
