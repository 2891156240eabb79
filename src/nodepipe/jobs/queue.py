"""In-process job queue with keyed coalescing.

Jobs are named tasks with a JSON-like payload, run on a thread pool. A job
submitted with a ``key`` never runs twice at once: submissions that arrive
while a job with the same key is running are folded into a single re-run
that starts when the active one finishes. Execution is at-least-once; a
failing job is logged and not retried unless it is enqueued again.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TaskHandler = Callable[[dict[str, Any]], Any]


@dataclass
class QueueStats:
    submitted: int = 0
    coalesced: int = 0
    completed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def merge_payloads(current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Fold a coalesced submission into the one already waiting.

    Boolean flags are OR-ed so a request to invalidate is never lost to a
    later plain request; other values take the newest submission.
    """
    merged = dict(current)
    for name, value in incoming.items():
        previous = merged.get(name)
        if isinstance(value, bool) and isinstance(previous, bool):
            merged[name] = previous or value
        else:
            merged[name] = value
    return merged


class JobQueue:
    """Thread-pool job runner.

    Args:
        max_workers: Jobs running at once across all keys.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="nodepipe-job")
        self._tasks: dict[str, TaskHandler] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._active_keys: set[str] = set()
        # key -> (task, payload) to run once the active job with that key finishes
        self._waiting: dict[str, tuple[str, dict[str, Any]]] = {}
        self._timers: set[threading.Timer] = set()
        self._outstanding = 0
        self._closed = False
        self.stats = QueueStats()

    # -- Registration --

    def register(self, name: str, handler: TaskHandler) -> None:
        if name in self._tasks:
            raise ValueError(f"Task {name!r} is already registered")
        self._tasks[name] = handler

    def define_task(self, name: str) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator registering ``handler`` under ``name``."""

        def decorator(handler: TaskHandler) -> TaskHandler:
            self.register(name, handler)
            return handler

        return decorator

    def has_task(self, name: str) -> bool:
        return name in self._tasks

    # -- Submission --

    def enqueue(
        self,
        task: str,
        payload: dict[str, Any] | None = None,
        key: str | None = None,
        delay: float = 0.0,
    ) -> None:
        """Submit a job, optionally after ``delay`` seconds."""
        if task not in self._tasks:
            raise ValueError(f"Unknown task: {task!r}")
        payload = dict(payload or {})

        with self._lock:
            if self._closed:
                raise RuntimeError("Job queue is shut down")
            self._outstanding += 1
            if delay > 0:
                timer = threading.Timer(delay, lambda: self._fire(timer, task, payload, key))
                timer.daemon = True
                self._timers.add(timer)
                timer.start()
                return
        self._submit(task, payload, key)

    def _fire(self, timer: threading.Timer, task: str, payload: dict[str, Any], key: str | None) -> None:
        with self._lock:
            if timer not in self._timers:
                # Cancelled by shutdown, which already dropped its count
                return
            self._timers.discard(timer)
        self._submit(task, payload, key)

    def _submit(self, task: str, payload: dict[str, Any], key: str | None) -> None:
        """Run now, or fold into the waiting re-run if the key is busy.

        Called with one outstanding job already counted for this submission.
        """
        with self._lock:
            self.stats.submitted += 1
            if key is not None:
                if key in self._active_keys:
                    waiting = self._waiting.get(key)
                    if waiting is not None:
                        payload = merge_payloads(waiting[1], payload)
                    self._waiting[key] = (task, payload)
                    self.stats.coalesced += 1
                    self._finish_one()
                    logger.debug("Coalesced job %s", key)
                    return
                self._active_keys.add(key)
        self._pool.submit(self._run, task, payload, key)

    def _run(self, task: str, payload: dict[str, Any], key: str | None) -> None:
        try:
            self._tasks[task](payload)
        except Exception as exc:
            logger.exception("Job %s (%s) failed", task, key or "unkeyed")
            with self._lock:
                self.stats.failed += 1
                self.stats.errors.append(f"{task}: {exc}")
        else:
            with self._lock:
                self.stats.completed += 1

        with self._lock:
            rerun = self._waiting.pop(key, None) if key is not None else None
            if rerun is None:
                if key is not None:
                    self._active_keys.discard(key)
                self._finish_one()
            elif self._closed:
                self._active_keys.discard(key)
                self._finish_one()
                rerun = None
        if rerun is not None:
            # The key stays active and the outstanding count carries over
            self._pool.submit(self._run, rerun[0], rerun[1], key)

    def _finish_one(self) -> None:
        self._outstanding -= 1
        if self._outstanding == 0:
            self._idle.notify_all()

    # -- Lifecycle --

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._active_keys

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is running, waiting or scheduled."""
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel scheduled jobs and stop accepting new ones."""
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
            for timer in timers:
                timer.cancel()
                self._finish_one()
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> JobQueue:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
