"""
Celery Tasks — Audit Job Pipeline

Task: run_job_task(kind, job_id)
  Executes one pipeline stage (extract | analyze | generate-report) through
  JobOrchestrator.run_task. The orchestrator enqueues the following stage
  itself, so a worker only ever runs a single stage per message.

  JobBusyError      → another task in this worker already holds the job; skipped
  JobFatalError     → job already marked failed by the orchestrator; not retried
  JobNotFoundError  → stale message; dropped
"""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any

from celery import Task

from app.core.exceptions import JobBusyError, JobFatalError, JobNotFoundError
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


@lru_cache(maxsize=1)
def get_worker_orchestrator():
    """One orchestrator per worker process; stage hand-off goes back to the broker."""
    from app.services.jobs import create_orchestrator
    from app.workers.dispatch import CeleryTaskQueue

    return create_orchestrator(tasks=CeleryTaskQueue())


# ---------------------------------------------------------------------------
# Stage task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.run_job_task",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_job_task(self: Task, *, kind: str, job_id: str) -> dict[str, Any]:
    orchestrator = get_worker_orchestrator()
    try:
        next_kind = run_async(orchestrator.run_task(kind, job_id))
    except JobBusyError:
        logger.warning("Job busy, skipping | kind=%s job=%s", kind, job_id)
        return {"status": "skipped", "job_id": job_id, "kind": kind}
    except JobNotFoundError:
        logger.error("Job not found | kind=%s job=%s", kind, job_id)
        return {"status": "not_found", "job_id": job_id, "kind": kind}
    except JobFatalError as exc:
        return {"status": "failed", "job_id": job_id, "kind": kind, "error": str(exc)}

    return {
        "status": "ok",
        "job_id": job_id,
        "kind":   kind,
        "next":   next_kind.value if next_kind else None,
    }
