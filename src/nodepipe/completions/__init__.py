"""Scenario/variant cell completions with bounded, jittered retries."""

from nodepipe.completions.engine import (
    MAX_AUTO_RETRIES,
    MAX_DELAY_MS,
    MIN_DELAY_MS,
    QUERY_MODEL_TASK,
    CellRunResult,
    CompletionEngine,
    calculate_delay,
    queue_query_model,
)
from nodepipe.completions.streaming import StreamBroadcaster, StreamEvent, cell_channel

__all__ = [
    "MAX_AUTO_RETRIES",
    "MAX_DELAY_MS",
    "MIN_DELAY_MS",
    "QUERY_MODEL_TASK",
    "CellRunResult",
    "CompletionEngine",
    "StreamBroadcaster",
    "StreamEvent",
    "calculate_delay",
    "cell_channel",
    "queue_query_model",
]
