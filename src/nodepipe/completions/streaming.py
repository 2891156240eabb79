"""Per-cell broadcast channels for streamed completions.

Subscribers receive every partial output published after they subscribed,
in publish order, followed by exactly one terminal event.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

PARTIAL = "partial"
FINAL = "final"
ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    data: Any = None

    @property
    def terminal(self) -> bool:
        return self.kind in (FINAL, ERROR)


class Subscription:
    """Iterable view of one channel; iteration stops after the terminal event."""

    def __init__(self, broadcaster: StreamBroadcaster, channel: str) -> None:
        self._broadcaster = broadcaster
        self.channel = channel
        self._events: queue.Queue[StreamEvent] = queue.Queue()
        self.closed = False

    def _deliver(self, event: StreamEvent) -> None:
        self._events.put(event)

    def get(self, timeout: float | None = None) -> StreamEvent:
        """Next event. Raises ``queue.Empty`` when ``timeout`` expires."""
        return self._events.get(timeout=timeout)

    def __iter__(self) -> Iterator[StreamEvent]:
        while True:
            event = self._events.get()
            yield event
            if event.terminal:
                self.close()
                return

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster.unsubscribe(self)


class StreamBroadcaster:
    """Thread-safe fan-out of stream events by channel name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, channel: str) -> Subscription:
        subscription = Subscription(self, channel)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.channel, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.channel, None)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def publish(self, channel: str, data: Any) -> None:
        """Send a partial output."""
        self._send(channel, StreamEvent(PARTIAL, data))

    def finish(self, channel: str, data: Any = None) -> None:
        self._send(channel, StreamEvent(FINAL, data))

    def fail(self, channel: str, message: str) -> None:
        self._send(channel, StreamEvent(ERROR, message))

    def _send(self, channel: str, event: StreamEvent) -> None:
        # Delivery under the lock keeps every subscriber's order identical
        with self._lock:
            for subscription in self._subscribers.get(channel, []):
                subscription._deliver(event)


def cell_channel(cell_id: str) -> str:
    return f"cell:{cell_id}"
