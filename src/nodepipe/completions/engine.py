"""Completion retry engine — drives one cell to COMPLETE or ERROR.

A cell is claimed with a conditional update from PENDING to IN_PROGRESS, so
duplicate deliveries of the same job never call the provider twice. Failed
attempts that the provider marks auto-retryable are retried with exponential
backoff plus jitter, up to ``MAX_AUTO_RETRIES`` retries after the first call.
"""

from __future__ import annotations

import json
import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, update
from sqlalchemy.orm import Session, sessionmaker

from nodepipe.build.fingerprint import hash_prompt
from nodepipe.completions.evaluations import run_evals_for_output
from nodepipe.completions.prompts import construct_prompt
from nodepipe.completions.streaming import StreamBroadcaster, cell_channel
from nodepipe.core.errors import ValidationError
from nodepipe.core.models import RetrievalStatus
from nodepipe.db.engine import session_scope
from nodepipe.db.models import ModelOutput, PromptVariant, ScenarioVariantCell, TestScenario
from nodepipe.llm.providers import CompletionError, ProviderRegistry

if TYPE_CHECKING:
    from nodepipe.jobs.queue import JobQueue

logger = logging.getLogger(__name__)

QUERY_MODEL_TASK = "query_model"

MAX_AUTO_RETRIES = 10
MIN_DELAY_MS = 500
MAX_DELAY_MS = 15_000

# (session, experiment_id, scenario, model_output) after a successful completion
CompletionHook = Callable[[Session, str, TestScenario, ModelOutput], Any]


def calculate_delay(previous_tries: int, rng: random.Random | None = None) -> float:
    """Backoff in milliseconds before retry number ``previous_tries + 1``.

    The base doubles from ``MIN_DELAY_MS`` up to ``MAX_DELAY_MS``; jitter adds
    up to one more base, so the result lies in ``[base, 2 * base]``.
    """
    base = min(MAX_DELAY_MS, MIN_DELAY_MS * 2**previous_tries)
    jitter = (rng or random).random() * base
    return base + jitter


@dataclass
class CellRunResult:
    """What one ``run`` did to a cell."""

    cell_id: str
    status: RetrievalStatus | None
    status_code: int | None = None
    attempts: int = 0
    error: str | None = None


def query_model_job_key(cell_id: str) -> str:
    return f"{QUERY_MODEL_TASK}:{cell_id}"


class CompletionEngine:
    """Runs cells against their variant's model provider.

    Args:
        session_factory: Factory for sessions bound to the database.
        providers: Registry resolving a variant's ``model_provider``.
        broadcaster: Receives streamed partial outputs per cell channel.
        wait: Called with a delay in seconds between attempts. Defaults to a
            cooperative wait that ``stop()`` interrupts.
        rng: Source of retry jitter.
        hooks: Run in the writing session after each successful completion.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        providers: ProviderRegistry,
        broadcaster: StreamBroadcaster | None = None,
        wait: Callable[[float], Any] | None = None,
        rng: random.Random | None = None,
        hooks: list[CompletionHook] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.providers = providers
        self.broadcaster = broadcaster or StreamBroadcaster()
        self._stopping = threading.Event()
        self.wait = wait or self._stopping.wait
        self.rng = rng or random.Random()
        self.hooks: list[CompletionHook] = list(hooks) if hooks is not None else [run_evals_for_output]

    def stop(self) -> None:
        """Interrupt retry waits for good.

        A cell whose retry is cut short stays in ERROR with no retry pending.
        A stopped engine does not retry again; build a new one to resume.
        """
        self._stopping.set()

    def run(self, cell_id: str, stream: bool = False) -> CellRunResult:
        """Resolve one cell. Safe to call for a cell another worker owns."""
        channel = cell_channel(cell_id)

        with session_scope(self.session_factory) as session:
            cell = session.get(ScenarioVariantCell, cell_id)
            if cell is None:
                logger.warning("Cell %s not found", cell_id)
                if stream:
                    self.broadcaster.fail(channel, "Cell not found")
                return CellRunResult(cell_id, None, status_code=404, error="Cell not found")

            claimed = session.execute(
                update(ScenarioVariantCell)
                .where(
                    ScenarioVariantCell.id == cell_id,
                    ScenarioVariantCell.retrieval_status == RetrievalStatus.PENDING,
                )
                .values(retrieval_status=RetrievalStatus.IN_PROGRESS)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                # Some other job is already processing this cell
                return CellRunResult(cell_id, cell.retrieval_status, status_code=cell.status_code)

            variant = session.get(PromptVariant, cell.prompt_variant_id)
            scenario = session.get(TestScenario, cell.test_scenario_id)

        if variant is None:
            return self._fail(cell_id, 404, "Prompt Variant not found", stream)
        if scenario is None:
            return self._fail(cell_id, 404, "Scenario not found", stream)

        try:
            model_input = construct_prompt(variant.prompt_template, scenario.variable_values)
            provider_name = self.providers.resolve_name(variant.model_provider)
            provider = self.providers.get(provider_name)
        except ValidationError as exc:
            return self._fail(cell_id, 400, str(exc), stream)

        on_stream = (lambda partial: self.broadcaster.publish(channel, partial)) if stream else None

        attempt = 0
        while True:
            response = provider.get_completion(model_input, on_stream)
            attempt += 1

            if not isinstance(response, CompletionError):
                with session_scope(self.session_factory) as session:
                    # A re-queued cell replaces its previous output
                    session.execute(delete(ModelOutput).where(ModelOutput.cell_id == cell_id))
                    model_output = ModelOutput(
                        cell_id=cell_id,
                        input_hash=hash_prompt(provider_name, model_input),
                        output_json=json.dumps(response.value),
                        time_to_complete_ms=response.time_to_complete_ms,
                        prompt_tokens=response.prompt_tokens,
                        completion_tokens=response.completion_tokens,
                        cost=response.cost,
                    )
                    session.add(model_output)
                    self._write(
                        session,
                        cell_id,
                        retrieval_status=RetrievalStatus.COMPLETE,
                        status_code=response.status_code,
                        error_message=None,
                        retry_time=None,
                    )
                    session.flush()
                    for hook in self.hooks:
                        hook(session, variant.experiment_id, scenario, model_output)
                if stream:
                    self.broadcaster.finish(channel, response.value)
                return CellRunResult(
                    cell_id, RetrievalStatus.COMPLETE, response.status_code, attempts=attempt
                )

            previous_tries = attempt - 1
            should_retry = response.auto_retry and previous_tries < MAX_AUTO_RETRIES
            delay_ms = calculate_delay(previous_tries, self.rng)
            retry_time = (
                datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms) if should_retry else None
            )
            with session_scope(self.session_factory) as session:
                self._write(
                    session,
                    cell_id,
                    retrieval_status=RetrievalStatus.ERROR,
                    status_code=response.status_code,
                    error_message=response.message,
                    retry_time=retry_time,
                )

            if not should_retry:
                logger.info("Cell %s failed after %d attempts: %s", cell_id, attempt, response.message)
                if stream:
                    self.broadcaster.fail(channel, response.message)
                return CellRunResult(
                    cell_id,
                    RetrievalStatus.ERROR,
                    response.status_code,
                    attempts=attempt,
                    error=response.message,
                )

            logger.debug("Cell %s attempt %d failed; retrying in %.0f ms", cell_id, attempt, delay_ms)
            self.wait(delay_ms / 1000)
            if self._stopping.is_set():
                with session_scope(self.session_factory) as session:
                    self._write(session, cell_id, retry_time=None)
                if stream:
                    self.broadcaster.fail(channel, response.message)
                return CellRunResult(
                    cell_id,
                    RetrievalStatus.ERROR,
                    response.status_code,
                    attempts=attempt,
                    error=response.message,
                )
            with session_scope(self.session_factory) as session:
                self._write(
                    session, cell_id, retrieval_status=RetrievalStatus.IN_PROGRESS, retry_time=None
                )

    def _fail(self, cell_id: str, status_code: int, message: str, stream: bool) -> CellRunResult:
        with session_scope(self.session_factory) as session:
            self._write(
                session,
                cell_id,
                retrieval_status=RetrievalStatus.ERROR,
                status_code=status_code,
                error_message=message,
                retry_time=None,
            )
        if stream:
            self.broadcaster.fail(cell_channel(cell_id), message)
        return CellRunResult(cell_id, RetrievalStatus.ERROR, status_code, error=message)

    @staticmethod
    def _write(session: Session, cell_id: str, **values: Any) -> None:
        session.execute(
            update(ScenarioVariantCell)
            .where(ScenarioVariantCell.id == cell_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


def queue_query_model(session: Session, queue: JobQueue, cell_id: str, stream: bool = False) -> None:
    """Reset a cell to PENDING and submit a job to resolve it.

    This is the explicit reprocessing request for cells that ended in ERROR.
    The reset is committed before the job is submitted so the worker's claim
    sees it.
    """
    session.execute(
        update(ScenarioVariantCell)
        .where(ScenarioVariantCell.id == cell_id)
        .values(retrieval_status=RetrievalStatus.PENDING, error_message=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    queue.enqueue(
        QUERY_MODEL_TASK,
        {"cell_id": cell_id, "stream": stream},
        key=query_model_job_key(cell_id),
    )
