"""
Task substrate — how a pipeline stage gets executed.

  TaskQueue.enqueue(kind, job_id)

  CeleryTaskQueue   publishes app.workers.tasks.run_job_task to the broker;
                    a worker calls JobOrchestrator.run_task(kind, job_id)
  InlineTaskQueue   immediate in-process execution on the running event loop
                    (local / degraded mode and tests, no broker)

The orchestrator's state machine is identical under both: every stage goes
through run_task, and stage hand-off always goes back through enqueue().
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from app.schemas.jobs import TaskKind

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskKind, str], Awaitable[Any]]


class TaskQueue(ABC):

    @abstractmethod
    async def enqueue(self, kind: TaskKind, job_id: str) -> None:
        """Schedule one pipeline stage for a job."""


class CeleryTaskQueue(TaskQueue):
    """
    Sends the stage to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def enqueue(self, kind: TaskKind, job_id: str) -> None:
        from app.workers.tasks import run_job_task

        kind = TaskKind(kind)
        loop = asyncio.get_running_loop()
        # apply_async blocks on the broker connection
        await loop.run_in_executor(
            None,
            lambda: run_job_task.apply_async(
                kwargs={"kind": kind.value, "job_id": job_id},
                queue=QUEUE_BY_KIND[kind],
            ),
        )
        logger.info("Task published | kind=%s job=%s", kind.value, job_id)


class InlineTaskQueue(TaskQueue):
    """Runs stages as background asyncio tasks in the current process."""

    def __init__(self, handler: TaskHandler | None = None) -> None:
        self._handler = handler
        self._tasks: set[asyncio.Task] = set()

    def bind(self, handler: TaskHandler) -> None:
        self._handler = handler

    async def enqueue(self, kind: TaskKind, job_id: str) -> None:
        if self._handler is None:
            raise RuntimeError("InlineTaskQueue has no handler bound")
        kind = TaskKind(kind)
        task = asyncio.create_task(self._run(kind, job_id), name=f"{kind.value}:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Task scheduled inline | kind=%s job=%s", kind.value, job_id)

    async def _run(self, kind: TaskKind, job_id: str) -> None:
        try:
            await self._handler(kind, job_id)
        except Exception:
            # job-level failure is already recorded by the orchestrator
            logger.exception("Inline task failed | kind=%s job=%s", kind.value, job_id)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every scheduled stage, including stages they enqueue, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


QUEUE_BY_KIND: dict[TaskKind, str] = {
    TaskKind.EXTRACT:         "jobs.extract",
    TaskKind.ANALYZE:         "jobs.analyze",
    TaskKind.GENERATE_REPORT: "jobs.report",
}


def create_task_queue(backend: str) -> TaskQueue:
    backend = backend.lower()
    if backend == "celery":
        return CeleryTaskQueue()
    if backend == "inline":
        return InlineTaskQueue()
    raise ValueError(
        f"Unknown task backend: '{backend}'. "
        f"Valid options: 'celery', 'inline'"
    )
