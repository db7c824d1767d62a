"""
Job Orchestrator — resumable extraction → analysis → report state machine
═════════════════════════════════════════════════════════════════════════

  create ──▶ created
  upload ──▶ uploaded ──extract──▶ extracting ──▶ extracted ─┐
  upload-pdf (single large file) ──────────────▶ extracted ─┤
                                                            ▼
                     analyzing ──▶ analysis-complete ──▶ generating-report ──▶ completed
  failed: reachable from any active state on a JobFatalError

Every stage runs through run_task(kind, job_id), whichever substrate
(Celery or inline) executes it. A stage returns the next stage to enqueue;
the per-job advisory flag is released before the hand-off so the next
stage can acquire it.

Analysis is a checkpointed fold over the pending documents of the ledger:

  for each pending document, in registration order:
      analyze → completed | failed (+ placeholder row) → tokens
      flush ledger when: every `checkpoint_every` documents,
                         after any large (multi-unit) document,
                         before a fatal abort, and at the end

The flushed ledger is the crash-recovery contract: a restarted process
resumes from it without reprocessing terminal documents.
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
import threading
import uuid
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, BinaryIO, Callable

from pydantic import ValidationError

from app.core.config import MB, PipelineLimits, Settings
from app.core.exceptions import (
    ArchiveOpenError,
    DocumentProcessingError,
    JobBusyError,
    JobFatalError,
    JobNotFoundError,
    LedgerCorruptError,
    LedgerNotFoundError,
    ReportNotReadyError,
    ServiceExhaustedError,
    StageError,
)
from app.llm.invoker import AnalysisInvoker
from app.observability.cost import estimate_cost_usd
from app.processing.strategy import analyze_pdf, processing_estimate
from app.schemas.jobs import (
    DocumentEntry,
    DocumentStatus,
    Job,
    JobStatus,
    JobStatusResponse,
    LedgerStatus,
    ProcessingEstimate,
    ProcessingLedger,
    TaskKind,
    utcnow,
)
from app.schemas.records import AnalysisRecord
from app.services.document_analyzer import SUPPORTED_TYPES, DocumentAnalyzer, DocumentOutcome
from app.services.events import EventBroadcaster, JobLogBuffer, JobStatusStore
from app.services.reports import ReportGenerator, summarize_risk
from app.storage.base import BlobStore
from app.storage.keys import MASTER_PROMPT_KEY, JobKeys, job_id_from_metadata_key, sanitize_name
from app.workers.dispatch import TaskQueue

logger = logging.getLogger(__name__)

# Archive entries that are never documents
_SYSTEM_FILES = frozenset({"thumbs.db", ".ds_store", "desktop.ini"})
_SPOOL_MAX_BYTES = 64 * MB

Sleep = Callable[[float], Awaitable[Any]]


def new_job_id(now: datetime | None = None) -> str:
    """YYYYMMDD_<epoch ms>_<8 hex>"""
    now = now or utcnow()
    return f"{now:%Y%m%d}_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


def file_type(name: str) -> str:
    """Lowercased extension without the dot ("" when there is none)."""
    _, dot, ext = name.rpartition(".")
    return ext.lower() if dot else ""


def is_skippable_entry(path: str) -> bool:
    """Directories, hidden/system entries and resource forks."""
    if path.endswith("/"):
        return True
    parts = [p for p in path.replace("\\", "/").split("/") if p]
    if not parts:
        return True
    if any(p.startswith(".") or p.startswith("__") for p in parts):
        return True
    return parts[-1].lower() in _SYSTEM_FILES


def unique_name(name: str, taken: set[str]) -> str:
    """report.pdf, report (2).pdf, report (3).pdf …"""
    if name not in taken:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    counter = 2
    while True:
        candidate = f"{stem} ({counter}){'.' + ext if ext else ''}"
        if candidate not in taken:
            return candidate
        counter += 1


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrchestratorOptions:
    checkpoint_every:                 int   = 5
    max_consecutive_service_failures: int   = 3
    document_delay:                   float = 1.0
    medium_document_delay:            float = 1.5
    large_document_delay:             float = 2.0
    medium_document_bytes:            int   = 5 * MB
    rate_limit_cooldown:              float = 30.0
    model_id:                         str   = ""
    signed_url_ttl:                   int   = 3600

    @classmethod
    def from_settings(cls, cfg: Settings) -> "OrchestratorOptions":
        return cls(
            checkpoint_every=cfg.checkpoint_every,
            max_consecutive_service_failures=cfg.max_consecutive_service_failures,
            document_delay=cfg.document_delay,
            medium_document_delay=cfg.medium_document_delay,
            large_document_delay=cfg.large_document_delay,
            medium_document_bytes=cfg.large_unit_bytes,
            rate_limit_cooldown=cfg.rate_limit_cooldown,
            model_id=cfg.bedrock_model_id,
            signed_url_ttl=cfg.signed_url_ttl_seconds,
        )


@dataclass
class ResumeResult:
    job_id:  str
    task:    TaskKind | None
    message: str
    pending: int = 0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class JobOrchestrator:
    """
    Owns Job and ProcessingLedger state for every job in this process.

    All collaborators are injected; one instance per process (API or worker).
    """

    def __init__(
        self,
        store:       BlobStore,
        invoker:     AnalysisInvoker,
        reports:     ReportGenerator,
        tasks:       TaskQueue,
        limits:      PipelineLimits,
        options:     OrchestratorOptions | None = None,
        broadcaster: EventBroadcaster | None = None,
        statuses:    JobStatusStore | None = None,
        logs:        JobLogBuffer | None = None,
        sleep:       Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._invoker = invoker
        self._reports = reports
        self._tasks = tasks
        self._limits = limits
        self._options = options or OrchestratorOptions()
        self._events = broadcaster or EventBroadcaster()
        self._statuses = statuses or JobStatusStore()
        self._logs = logs or JobLogBuffer(store)
        self._sleep = sleep

        self._running: set[str] = set()
        self._running_lock = threading.Lock()

        self._handlers = {
            TaskKind.EXTRACT:         self._extract,
            TaskKind.ANALYZE:         self._analyze,
            TaskKind.GENERATE_REPORT: self._generate_report,
        }

    @property
    def events(self) -> EventBroadcaster:
        return self._events

    @property
    def tasks(self) -> TaskQueue:
        return self._tasks

    # ------------------------------------------------------------------
    # Per-job advisory flag
    # ------------------------------------------------------------------

    def is_running(self, job_id: str) -> bool:
        with self._running_lock:
            return job_id in self._running

    def _acquire(self, job_id: str) -> None:
        with self._running_lock:
            if job_id in self._running:
                raise JobBusyError(job_id)
            self._running.add(job_id)

    def _release(self, job_id: str) -> None:
        with self._running_lock:
            self._running.discard(job_id)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _save_job(self, job: Job) -> None:
        job.updated_at = utcnow()
        await self._store.put_json(JobKeys(job.id).metadata, job.model_dump(mode="json"))
        self._statuses.put(job)

    async def load_job(self, job_id: str) -> Job:
        try:
            data = await self._store.get_json(JobKeys(job_id).metadata)
        except FileNotFoundError:
            raise JobNotFoundError(job_id) from None
        return Job.model_validate(data)

    async def _save_ledger(self, job_id: str, ledger: ProcessingLedger) -> None:
        ledger.touch()
        await self._store.put_json(JobKeys(job_id).ledger, ledger.model_dump(mode="json", by_alias=True))

    async def has_ledger(self, job_id: str) -> bool:
        return await self._store.exists(JobKeys(job_id).ledger)

    async def load_ledger(self, job_id: str) -> ProcessingLedger:
        key = JobKeys(job_id).ledger
        try:
            data = await self._store.get_json(key)
        except FileNotFoundError:
            raise LedgerNotFoundError(f"No processing ledger for job {job_id}") from None
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise LedgerCorruptError(f"Ledger is not valid JSON: {exc}") from exc
        try:
            return ProcessingLedger.model_validate(data)
        except ValidationError as exc:
            raise LedgerCorruptError(f"Ledger failed validation: {exc.error_count()} errors") from exc

    async def _load_master_prompt(self) -> dict[str, Any] | None:
        try:
            master = await self._store.get_json(MASTER_PROMPT_KEY)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            logger.warning("Master prompt unreadable, using built-in instructions: %s", exc)
            return None
        return master if isinstance(master, dict) else None

    # ------------------------------------------------------------------
    # Events and job log
    # ------------------------------------------------------------------

    def _emit(self, job_id: str, event: str, payload: dict[str, Any]) -> None:
        self._events.publish(job_id, event, payload)

    def _emitter(self, job_id: str) -> Callable[[str, dict], None]:
        return lambda event, payload: self._emit(job_id, event, payload)

    async def _log(self, job_id: str, message: str, level: str = "info", **data: Any) -> None:
        logger.log(
            logging.getLevelName(level.upper()),
            "Job %s | %s", job_id, message,
        )
        entry = await self._logs.append(job_id, message, level, data or None)
        self._emit(job_id, "log", entry.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Create / upload
    # ------------------------------------------------------------------

    async def create_job(self, created_by: str | None = None) -> Job:
        job = Job(id=new_job_id(), created_by=created_by)
        await self._save_job(job)
        await self._log(job.id, "Job created")
        return job

    async def register_archive_upload(
        self,
        job_id:    str,
        fileobj:   BinaryIO,
        file_name: str,
        file_size: int | None = None,
    ) -> Job:
        """Store the raw archive; extraction runs as its own stage."""
        job = await self.load_job(job_id)
        await self._store.put_file(JobKeys(job_id).raw_archive, fileobj, "application/zip")

        job.status = JobStatus.UPLOADED
        job.file_name = file_name
        job.file_size = file_size
        await self._save_job(job)
        await self._log(job_id, f"Archive uploaded: {file_name}", size=file_size)
        return job

    async def register_single_document(
        self,
        job_id:    str,
        data:      bytes,
        file_name: str,
    ) -> tuple[DocumentEntry, ProcessingEstimate]:
        """Single large PDF path: bypasses extraction, job goes straight to extracted."""
        name = sanitize_name(file_name)
        if file_type(name) != "pdf":
            raise ValueError("Only PDF files are accepted for single-document upload")

        job = await self.load_job(job_id)
        loop = asyncio.get_running_loop()
        analysis = await loop.run_in_executor(None, analyze_pdf, data, self._limits)

        keys = JobKeys(job_id)
        await self._store.put(keys.extracted(name), data, "application/pdf")

        entry = DocumentEntry(
            name=name,
            key=keys.extracted(name),
            type="pdf",
            size=len(data),
            analysis=analysis,
        )
        ledger = ProcessingLedger(documents=[entry])
        await self._save_ledger(job_id, ledger)

        job.status = JobStatus.EXTRACTED
        job.file_name = name
        job.file_size = len(data)
        job.total_documents = 1
        await self._save_job(job)

        estimate = processing_estimate(analysis)
        await self._log(
            job_id,
            f"Single PDF registered: {name} strategy={analysis.strategy.value} "
            f"units={analysis.estimated_units}",
            strategy=analysis.strategy.value,
            pages=analysis.page_count,
        )
        return entry, estimate

    async def get_strategy(self, job_id: str) -> list[tuple[DocumentEntry, ProcessingEstimate | None]]:
        ledger = await self.load_ledger(job_id)
        return [
            (d, processing_estimate(d.analysis) if d.analysis else None)
            for d in ledger.documents
        ]

    # ------------------------------------------------------------------
    # Stage entry point
    # ------------------------------------------------------------------

    async def run_task(self, kind: TaskKind | str, job_id: str) -> TaskKind | None:
        """Run one stage under the per-job flag, then enqueue the next stage."""
        kind = TaskKind(kind)
        self._acquire(job_id)
        try:
            next_kind = await self._handlers[kind](job_id)
        except JobNotFoundError:
            raise
        except JobFatalError as exc:
            await self._fail_job(job_id, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected stage error | kind=%s job=%s", kind.value, job_id)
            error = StageError(f"{kind.value} failed: {type(exc).__name__}: {exc}")
            await self._fail_job(job_id, error)
            raise error from exc
        finally:
            self._release(job_id)

        if next_kind is not None:
            await self._tasks.enqueue(next_kind, job_id)
        return next_kind

    async def extract(self, job_id: str) -> TaskKind | None:
        return await self.run_task(TaskKind.EXTRACT, job_id)

    async def analyze(self, job_id: str) -> TaskKind | None:
        return await self.run_task(TaskKind.ANALYZE, job_id)

    async def generate_report(self, job_id: str) -> TaskKind | None:
        return await self.run_task(TaskKind.GENERATE_REPORT, job_id)

    async def _fail_job(self, job_id: str, exc: JobFatalError) -> None:
        logger.error("Job failed | job=%s error=%s: %s", job_id, type(exc).__name__, exc)
        try:
            job = await self.load_job(job_id)
        except JobNotFoundError:
            logger.error("Job failed but metadata is missing | job=%s", job_id)
            return
        job.status = JobStatus.FAILED
        job.error = f"{type(exc).__name__}: {exc}"
        await self._save_job(job)
        await self._log(job_id, f"Job failed: {exc}", level="error")
        self._emit(job_id, "error", {"error": job.error})
        await self._logs.flush(job_id)
        self._statuses.discard(job_id)

    # ------------------------------------------------------------------
    # Stage: extract
    # ------------------------------------------------------------------

    async def _extract(self, job_id: str) -> TaskKind | None:
        job = await self.load_job(job_id)
        keys = JobKeys(job_id)

        # An existing ledger owns the document states; never rebuild it
        if await self.has_ledger(job_id):
            await self._log(job_id, "Archive already extracted, continuing with analysis", level="warning")
            return TaskKind.ANALYZE

        job.status = JobStatus.EXTRACTING
        await self._save_job(job)
        await self._log(job_id, "Extracting archive")

        loop = asyncio.get_running_loop()
        documents: list[DocumentEntry] = []
        taken: set[str] = set()
        skipped = 0

        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as spool:
            try:
                async for chunk in self._store.iter_chunks(keys.raw_archive):
                    spool.write(chunk)
            except FileNotFoundError as exc:
                raise ArchiveOpenError(f"No uploaded archive for job {job_id}") from exc
            spool.seek(0)

            try:
                archive = zipfile.ZipFile(spool)
            except (zipfile.BadZipFile, OSError) as exc:
                raise ArchiveOpenError(f"Archive cannot be opened: {exc}") from exc

            with archive:
                for info in archive.infolist():
                    if info.is_dir() or is_skippable_entry(info.filename):
                        continue
                    doc_type = file_type(info.filename)
                    if doc_type not in SUPPORTED_TYPES:
                        skipped += 1
                        await self._log(job_id, f"Skipped unsupported entry: {info.filename}", level="debug")
                        continue

                    name = unique_name(sanitize_name(info.filename), taken)
                    taken.add(name)
                    key = keys.extracted(name)

                    try:
                        data = await loop.run_in_executor(None, archive.read, info)
                    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError, ValueError) as exc:
                        entry = DocumentEntry(name=name, key=key, type=doc_type, size=info.file_size)
                        entry.mark_failed(f"Corrupt archive entry: {exc}")
                        documents.append(entry)
                        await self._log(job_id, f"Corrupt archive entry {info.filename}: {exc}", level="warning")
                        continue

                    await self._store.put(key, data)
                    documents.append(DocumentEntry(name=name, key=key, type=doc_type, size=len(data)))
                    del data

                    self._emit(job_id, "progress", {
                        "stage":     "extracting",
                        "extracted": len(documents),
                        "current":   name,
                    })

        ledger = ProcessingLedger(documents=documents)
        for entry in documents:
            if entry.status is DocumentStatus.FAILED:
                ledger.record_result(AnalysisRecord.placeholder(entry.name, entry.error or "Corrupt archive entry"))
                ledger.record_failure(entry.name, entry.error or "Corrupt archive entry")
        await self._save_ledger(job_id, ledger)

        job.status = JobStatus.EXTRACTED
        job.total_documents = len(documents)
        job.processed_count = ledger.processed_count
        job.failed_count = len(ledger.failed_documents)
        await self._save_job(job)

        await self._log(job_id, f"Extracted {len(documents)} documents ({skipped} skipped)")
        self._emit(job_id, "extraction-complete", {"total_documents": len(documents), "skipped": skipped})
        return TaskKind.ANALYZE

    # ------------------------------------------------------------------
    # Stage: analyze
    # ------------------------------------------------------------------

    async def _analyze(self, job_id: str) -> TaskKind | None:
        job = await self.load_job(job_id)
        ledger = await self.load_ledger(job_id)
        pending = ledger.pending

        if not pending:
            await self._log(job_id, "No pending documents")
            if ledger.report_key:
                return None
            return TaskKind.GENERATE_REPORT

        job.status = JobStatus.ANALYZING
        job.error = None
        ledger.status = LedgerStatus.PROCESSING
        await self._save_ledger(job_id, ledger)
        await self._save_job(job)
        await self._log(job_id, f"Analyzing {len(pending)} of {len(ledger.documents)} documents")

        analyzer = DocumentAnalyzer(
            self._invoker,
            self._limits,
            master_prompt=await self._load_master_prompt(),
            sleep=self._sleep,
        )
        emit = self._emitter(job_id)
        opts = self._options

        since_checkpoint = 0
        consecutive_exhausted = 0
        previous_delay: float | None = None

        for position, entry in enumerate(pending):
            if previous_delay is not None:
                await self._sleep(previous_delay)

            self._emit(job_id, "processing", {
                "document": entry.name,
                "index":    position + 1,
                "total":    len(pending),
            })

            outcome = await self._process_document(job_id, analyzer, entry, ledger, emit)
            job.total_tokens_input = ledger.total_tokens_input
            job.total_tokens_output = ledger.total_tokens_output
            job.processed_count = ledger.terminal_count
            job.failed_count = len(ledger.failed_documents)
            self._statuses.put(job)

            large = outcome is not None and outcome.units_total > 1
            since_checkpoint += 1
            if large or since_checkpoint >= opts.checkpoint_every:
                await self._checkpoint(job, ledger)
                since_checkpoint = 0

            if outcome is not None and outcome.exhausted:
                consecutive_exhausted += 1
            else:
                consecutive_exhausted = 0
            if consecutive_exhausted >= opts.max_consecutive_service_failures:
                await self._checkpoint(job, ledger)
                raise ServiceExhaustedError(
                    f"AI service unavailable for {consecutive_exhausted} consecutive documents"
                )

            if outcome is not None and outcome.rate_limited:
                await self._log(
                    job_id,
                    f"Rate limited, cooling down {opts.rate_limit_cooldown:.0f}s",
                    level="warning",
                )
                await self._sleep(opts.rate_limit_cooldown)

            if large:
                previous_delay = opts.large_document_delay
            elif entry.size > opts.medium_document_bytes:
                previous_delay = opts.medium_document_delay
            else:
                previous_delay = opts.document_delay

        ledger.status = LedgerStatus.ANALYSIS_COMPLETE
        job.status = JobStatus.ANALYSIS_COMPLETE
        await self._checkpoint(job, ledger)

        completed = sum(1 for d in ledger.documents if d.status is DocumentStatus.COMPLETED)
        await self._log(
            job_id,
            f"Analysis complete: {completed} completed, {len(ledger.failed_documents)} failed",
        )
        self._emit(job_id, "analysis-complete", {
            "completed": completed,
            "failed":    len(ledger.failed_documents),
        })
        return TaskKind.GENERATE_REPORT

    async def _process_document(
        self,
        job_id:   str,
        analyzer: DocumentAnalyzer,
        entry:    DocumentEntry,
        ledger:   ProcessingLedger,
        emit:     Callable[[str, dict], None],
    ) -> DocumentOutcome | None:
        """Analyze one document and fold the outcome into the ledger."""
        await self._log(job_id, f"Processing {entry.name}", size=entry.size)
        outcome: DocumentOutcome | None = None

        try:
            data = await self._store.get(entry.key)
            outcome = await analyzer.analyze(entry, data, emit)
        except FileNotFoundError:
            reason = "Stored document is missing"
        except DocumentProcessingError as exc:
            reason = str(exc)
        except Exception as exc:
            logger.exception("Unhandled document error | job=%s doc=%s", job_id, entry.name)
            reason = f"Unexpected error: {exc}"
        else:
            reason = outcome.failure_reason

        if outcome is not None:
            ledger.add_tokens(outcome.input_tokens, outcome.output_tokens)
            self._emit(job_id, "tokens", {
                "document":     entry.name,
                "input":        outcome.input_tokens,
                "output":       outcome.output_tokens,
                "total_input":  ledger.total_tokens_input,
                "total_output": ledger.total_tokens_output,
            })

        if outcome is not None and outcome.succeeded:
            entry.mark_completed()
            ledger.record_result(outcome.record)
            await self._log(
                job_id,
                f"Completed {entry.name}: risk={outcome.record.risk_rating} "
                f"confidence={outcome.record.confidence_score}",
            )
        else:
            entry.mark_failed(reason)
            ledger.record_failure(entry.name, reason)
            placeholder = AnalysisRecord.placeholder(entry.name, reason)
            if outcome is not None:
                placeholder = placeholder.model_copy(update={
                    "tokens_input":  outcome.input_tokens,
                    "tokens_output": outcome.output_tokens,
                    "processing_strategy": outcome.strategy.strategy.value if outcome.strategy else None,
                })
            ledger.record_result(placeholder)
            await self._log(job_id, f"Failed {entry.name}: {reason}", level="warning")

        return outcome

    async def _checkpoint(self, job: Job, ledger: ProcessingLedger) -> None:
        await self._save_ledger(job.id, ledger)
        job.processed_count = ledger.processed_count
        job.total_documents = ledger.total_documents
        job.failed_count = len(ledger.failed_documents)
        job.total_tokens_input = ledger.total_tokens_input
        job.total_tokens_output = ledger.total_tokens_output
        job.estimated_cost_usd = estimate_cost_usd(
            self._options.model_id, ledger.total_tokens_input, ledger.total_tokens_output,
        )
        await self._save_job(job)
        await self._logs.flush(job.id)
        self._emit(job.id, "progress", {
            "stage":     "analyzing",
            "processed": job.processed_count,
            "total":     job.total_documents,
            "failed":    job.failed_count,
        })

    # ------------------------------------------------------------------
    # Stage: generate-report
    # ------------------------------------------------------------------

    async def _generate_report(self, job_id: str) -> TaskKind | None:
        job = await self.load_job(job_id)
        ledger = await self.load_ledger(job_id)

        job.status = JobStatus.GENERATING_REPORT
        await self._save_job(job)
        await self._log(job_id, f"Generating report for {len(ledger.results)} documents")

        key = await self._reports.generate(job_id, ledger.results, ledger.failed_documents)

        now = utcnow()
        ledger.report_key = key
        ledger.status = LedgerStatus.COMPLETED
        ledger.completed_at = now
        await self._save_ledger(job_id, ledger)

        job.status = JobStatus.COMPLETED
        job.report_key = key
        job.completed_at = now
        job.processed_count = ledger.processed_count
        job.failed_count = len(ledger.failed_documents)
        await self._save_job(job)

        summary = summarize_risk(ledger.results, ledger.failed_documents)
        await self._log(job_id, "Report generated", report_key=key)
        self._emit(job_id, "complete", {"report_key": key, "stats": summary.as_dict()})
        await self._logs.flush(job_id)
        self._statuses.discard(job_id)
        return None

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def resume(self, job_id: str) -> ResumeResult:
        """Re-enter the pipeline from the persisted ledger."""
        if self.is_running(job_id):
            raise JobBusyError(job_id)

        job = await self.load_job(job_id)
        ledger = await self.load_ledger(job_id)
        pending = len(ledger.pending)

        if job.status is JobStatus.COMPLETED or (ledger.report_key and not pending):
            return ResumeResult(job_id, None, "Job already completed")

        job.resume_count += 1
        job.resumed_at = utcnow()
        job.error = None
        await self._save_job(job)

        if pending:
            kind = TaskKind.ANALYZE
            message = f"Resuming analysis of {pending} pending documents"
        else:
            kind = TaskKind.GENERATE_REPORT
            message = "All documents processed, generating report"

        await self._log(job_id, message, resume_count=job.resume_count)
        await self._tasks.enqueue(kind, job_id)
        return ResumeResult(job_id, kind, message, pending)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str) -> JobStatusResponse:
        running = self.is_running(job_id)
        job = self._statuses.get(job_id) if running else None
        if job is None:
            job = await self.load_job(job_id)

        pending_count = 0
        failed = []
        try:
            ledger = await self.load_ledger(job_id)
        except LedgerNotFoundError:
            ledger = None
        if ledger is not None:
            pending_count = len(ledger.pending)
            failed = ledger.failed_documents
            if not running:
                job.total_documents = len(ledger.documents)
                job.processed_count = ledger.terminal_count

        return JobStatusResponse(
            job=job,
            running=running,
            interrupted=job.is_interrupted(running),
            pending_count=pending_count,
            failed_documents=failed,
        )

    async def list_jobs(self) -> list[Job]:
        jobs: list[Job] = []
        for key in await self._store.list("jobs/"):
            job_id = job_id_from_metadata_key(key)
            if job_id is None:
                continue
            try:
                jobs.append(await self.load_job(job_id))
            except (JobNotFoundError, ValidationError) as exc:
                logger.warning("Skipping unreadable job metadata | key=%s error=%s", key, exc)
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def get_logs(self, job_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        await self.load_job(job_id)
        return await self._logs.read(job_id, limit)

    async def download_url(self, job_id: str) -> tuple[str, str, int]:
        job = await self.load_job(job_id)
        if not job.report_key:
            raise ReportNotReadyError(job_id)
        ttl = self._options.signed_url_ttl
        url = await self._store.signed_download_url(job.report_key, ttl)
        return url, job.report_key, ttl


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def create_orchestrator(
    cfg:     Settings | None = None,
    store:   BlobStore | None = None,
    tasks:   TaskQueue | None = None,
    invoker: AnalysisInvoker | None = None,
) -> JobOrchestrator:
    """Wire an orchestrator from settings; any collaborator can be overridden."""
    from app.core.config import get_settings
    from app.llm.service import BedrockAnalysisService
    from app.services.reports import JsonReportGenerator
    from app.storage.factory import get_blob_store
    from app.workers.dispatch import InlineTaskQueue, create_task_queue

    cfg = cfg or get_settings()
    store = store or get_blob_store()
    tasks = tasks or create_task_queue(cfg.task_backend)
    invoker = invoker or AnalysisInvoker.from_settings(BedrockAnalysisService.from_settings())

    orchestrator = JobOrchestrator(
        store=store,
        invoker=invoker,
        reports=JsonReportGenerator(store),
        tasks=tasks,
        limits=PipelineLimits.from_settings(cfg),
        options=OrchestratorOptions.from_settings(cfg),
        logs=JobLogBuffer(store, flush_every=cfg.log_flush_count, retention=cfg.log_retention),
    )
    if isinstance(tasks, InlineTaskQueue):
        tasks.bind(orchestrator.run_task)
    return orchestrator
