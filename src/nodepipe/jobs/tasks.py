"""Wiring of pipeline sweeps and cell completions onto the job queue."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from nodepipe.build.driver import PROCESS_NODE_TASK, PipelineDriver, enqueue_process_node
from nodepipe.completions.engine import QUERY_MODEL_TASK, CompletionEngine
from nodepipe.completions.streaming import StreamBroadcaster
from nodepipe.config import Settings
from nodepipe.core.logging import PipelineLogger, Verbosity
from nodepipe.jobs.queue import JobQueue
from nodepipe.llm.providers import ProviderRegistry


@dataclass
class Worker:
    """Everything needed to run jobs against one database."""

    queue: JobQueue
    driver: PipelineDriver
    engine: CompletionEngine

    def close(self) -> None:
        self.engine.stop()
        self.queue.shutdown()


def register_tasks(queue: JobQueue, driver: PipelineDriver, engine: CompletionEngine) -> None:
    """Define the queue tasks and route rate-limited nodes back onto the queue."""

    @queue.define_task(PROCESS_NODE_TASK)
    def process_node(payload: dict) -> None:
        driver.process(payload["node_id"], invalidate_data=bool(payload.get("invalidate_data")))

    @queue.define_task(QUERY_MODEL_TASK)
    def query_model(payload: dict) -> None:
        engine.run(payload["cell_id"], stream=bool(payload.get("stream")))

    driver.reenqueue = lambda node_id, delay: enqueue_process_node(queue, node_id, delay=delay)


def create_worker(
    settings: Settings,
    session_factory: sessionmaker[Session],
    providers: ProviderRegistry | None = None,
    broadcaster: StreamBroadcaster | None = None,
) -> Worker:
    """Build a queue, driver and completion engine sharing one provider registry."""
    providers = providers or ProviderRegistry(default_provider=settings.default_provider)
    queue = JobQueue(max_workers=settings.job_workers)
    driver = PipelineDriver(
        session_factory,
        providers=providers,
        logger_factory=lambda: PipelineLogger(
            verbosity=Verbosity(settings.log_verbosity),
            logs_dir=settings.logs_dir,
        ),
        rate_limit_delay=settings.rate_limit_requeue_seconds,
        read_batch_size=settings.read_batch_size,
    )
    engine = CompletionEngine(session_factory, providers, broadcaster=broadcaster)
    register_tasks(queue, driver, engine)
    return Worker(queue=queue, driver=driver, engine=engine)
