"""Background job execution."""

from nodepipe.jobs.queue import JobQueue, merge_payloads
from nodepipe.jobs.tasks import Worker, create_worker, register_tasks

__all__ = ["JobQueue", "Worker", "create_worker", "merge_payloads", "register_tasks"]
