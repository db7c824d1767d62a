"""
Process-scoped job stores — events, status mirror, batched logs
═══════════════════════════════════════════════════════════════

  EventBroadcaster   job_id → subscribers (one asyncio.Queue each)
                     populated on SSE subscribe, cleared on disconnect
  JobStatusStore     job_id → Job mirror for fast status queries
                     populated on create/load, cleared when a job completes
  JobLogBuffer       job_id → unflushed log entries
                     flushed to jobs/<id>/processing/logs.json every N entries,
                     at ledger checkpoints, and when a job finishes

Delivery is best-effort and at-most-once: a slow subscriber whose queue is
full simply misses events. Nothing here is required for correctness; status
can always be rebuilt from the persisted Job and ledger.

All three are safe to touch from several threads (Celery thread pools run
one event loop per task) and never lock across jobs for I/O.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from app.schemas.jobs import Job, LogEntry, utcnow
from app.storage.base import BlobStore
from app.storage.keys import JobKeys

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event broadcaster
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Subscriber:
    job_id: str
    queue:  asyncio.Queue
    loop:   asyncio.AbstractEventLoop

    def deliver(self, message: dict) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            self._put(message)
            return
        try:
            self.loop.call_soon_threadsafe(self._put, message)
        except RuntimeError:
            logger.debug("SSE subscriber loop closed | job=%s", self.job_id)

    def _put(self, message: dict) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.debug("SSE queue full for job=%s, dropping event", self.job_id)


class EventBroadcaster:
    """Fan-out of job events to whoever is currently listening."""

    def __init__(self, max_queue_size: int = 100) -> None:
        self._subscribers: dict[str, set[Subscriber]] = {}
        self._lock = threading.Lock()
        self._max_queue_size = max_queue_size

    def subscribe(self, job_id: str) -> Subscriber:
        subscriber = Subscriber(
            job_id=job_id,
            queue=asyncio.Queue(maxsize=self._max_queue_size),
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscribers.setdefault(job_id, set()).add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            subs = self._subscribers.get(subscriber.job_id)
            if subs is None:
                return
            subs.discard(subscriber)
            if not subs:
                del self._subscribers[subscriber.job_id]

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def publish(self, job_id: str, event: str, payload: dict[str, Any] | None = None) -> None:
        with self._lock:
            targets = list(self._subscribers.get(job_id, ()))
        if not targets:
            return

        message = {
            "event":     event,
            "job_id":    job_id,
            "timestamp": utcnow().isoformat(),
            "data":      payload or {},
        }
        for subscriber in targets:
            subscriber.deliver(message)


# ---------------------------------------------------------------------------
# Status mirror
# ---------------------------------------------------------------------------

class JobStatusStore:
    """In-memory mirror of Job records; the blob store stays authoritative."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job is not None else None

    def put(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy()

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def all(self) -> list[Job]:
        with self._lock:
            return [job.model_copy() for job in self._jobs.values()]


# ---------------------------------------------------------------------------
# Batched log cache
# ---------------------------------------------------------------------------

@dataclass
class _PendingLogs:
    entries: list[LogEntry] = field(default_factory=list)


class JobLogBuffer:
    """
    Human-readable job log, batched before it is written to the blob store.

    append() flushes automatically every `flush_every` entries; the
    orchestrator also flushes at each ledger checkpoint.
    """

    def __init__(self, store: BlobStore, flush_every: int = 20, retention: int = 1000) -> None:
        self._store = store
        self._flush_every = flush_every
        self._retention = retention
        self._pending: dict[str, _PendingLogs] = {}
        self._lock = threading.Lock()

    async def append(
        self,
        job_id: str,
        message: str,
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> LogEntry:
        entry = LogEntry(message=message, level=level, data=data)
        with self._lock:
            pending = self._pending.setdefault(job_id, _PendingLogs())
            pending.entries.append(entry)
            due = len(pending.entries) >= self._flush_every
        if due:
            await self.flush(job_id)
        return entry

    async def flush(self, job_id: str) -> int:
        with self._lock:
            pending = self._pending.pop(job_id, None)
        if pending is None or not pending.entries:
            return 0

        key = JobKeys(job_id).logs
        existing = await self._load(key)
        merged = existing + [e.model_dump(mode="json") for e in pending.entries]
        await self._store.put_json(key, merged[-self._retention:])
        return len(pending.entries)

    async def read(self, job_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Persisted entries followed by any not yet flushed."""
        entries = await self._load(JobKeys(job_id).logs)
        with self._lock:
            pending = self._pending.get(job_id)
            unflushed = list(pending.entries) if pending else []
        entries.extend(e.model_dump(mode="json") for e in unflushed)
        entries = entries[-self._retention:]
        return entries[-limit:] if limit else entries

    async def _load(self, key: str) -> list[dict[str, Any]]:
        try:
            data = await self._store.get_json(key)
        except FileNotFoundError:
            return []
        return data if isinstance(data, list) else []
