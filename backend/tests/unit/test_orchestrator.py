"""
Unit Tests — JobOrchestrator
═════════════════════════════
State machine, checkpointed analysis, resume and job-level failures.

All tests run against the in-memory blob store with inline stages; the AI
service is the scripted FakeAnalysisService from conftest.py.

Coverage targets:
  ✅ extract: filtering, duplicate names, corrupt archive, missing archive
  ✅ full pipeline extract → analyze → report through the task queue
  ✅ resume processes only pending documents
  ✅ crash mid-run: checkpointed ledger survives, resume finishes the rest
  ✅ consecutive exhausted documents abort the job
  ✅ missing / corrupt ledger are fatal
  ✅ advisory flag: busy jobs are rejected
  ✅ status view, download, single PDF registration
"""

from __future__ import annotations

import io
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import (
    ArchiveOpenError,
    JobBusyError,
    JobNotFoundError,
    LedgerCorruptError,
    LedgerNotFoundError,
    RateLimitedError,
    ReportNotReadyError,
    ServiceExhaustedError,
    StageError,
)
from app.schemas.jobs import (
    DocumentEntry,
    DocumentStatus,
    JobStatus,
    ProcessingLedger,
    StrategyKind,
    TaskKind,
)
from app.schemas.records import MANUAL_REVIEW, AnalysisRecord
from app.services.jobs import JobOrchestrator, file_type, is_skippable_entry, new_job_id, unique_name
from app.services.reports import JsonReportGenerator
from app.storage.keys import JobKeys
from app.workers.dispatch import TaskQueue
from tests.conftest import make_docx, make_pdf, make_zip, record_payload, text_page


class CrashError(BaseException):
    """Stands in for the process dying between documents."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _manual_orchestrator(blob_store, invoker, limits, options, sleep) -> tuple[JobOrchestrator, AsyncMock]:
    """Orchestrator whose hand-offs are only recorded, never executed."""
    tasks = AsyncMock(spec=TaskQueue)
    orch = JobOrchestrator(
        store=blob_store,
        invoker=invoker,
        reports=JsonReportGenerator(blob_store),
        tasks=tasks,
        limits=limits,
        options=options,
        sleep=sleep,
    )
    return orch, tasks


async def _seed_ledger(orchestrator, blob_store, statuses: list[DocumentStatus]) -> str:
    """Job in `analyzing` state with one small text PDF per status."""
    job = await orchestrator.create_job()
    keys = JobKeys(job.id)
    ledger = ProcessingLedger()

    for i, status in enumerate(statuses):
        name = f"doc{i:02d}.pdf"
        data = make_pdf([text_page(f"Document {i}")])
        await blob_store.put(keys.extracted(name), data)
        entry = DocumentEntry(name=name, key=keys.extracted(name), type="pdf", size=len(data))
        ledger.documents.append(entry)
        if status is DocumentStatus.COMPLETED:
            entry.mark_completed()
            ledger.record_result(AnalysisRecord.from_payload(record_payload()).model_copy(update={"document_name": name}))
        elif status is DocumentStatus.FAILED:
            entry.mark_failed("earlier failure")
            ledger.record_result(AnalysisRecord.placeholder(name, "earlier failure"))
            ledger.record_failure(name, "earlier failure")

    ledger.touch()
    await blob_store.put_json(keys.ledger, ledger.model_dump(mode="json", by_alias=True))

    job.status = JobStatus.ANALYZING
    job.total_documents = len(statuses)
    job.processed_count = ledger.processed_count
    await blob_store.put_json(keys.metadata, job.model_dump(mode="json"))
    return job.id


async def _load_ledger(blob_store, job_id: str) -> ProcessingLedger:
    return ProcessingLedger.model_validate(await blob_store.get_json(JobKeys(job_id).ledger))


def _archive() -> bytes:
    return make_zip({
        "Loan 1/sale_deed.pdf":     make_pdf([text_page("Sale deed")]),
        "Loan 2/sale_deed.pdf":     make_pdf([text_page("Second sale deed")]),
        "Loan 1/agreement.docx":    make_docx(["Agreement for sale"]),
        "Loan 1/notes.txt":         b"not analyzed",
        "__MACOSX/._sale_deed.pdf": b"resource fork",
        "Loan 1/.hidden.pdf":       b"hidden",
        "Thumbs.db":                b"thumbs",
    })


# ─────────────────────────────────────────────────────────────────────────────
# Helpers under test
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestNaming:

    def test_job_id_shape(self):
        parts = new_job_id().split("_")
        assert len(parts) == 3
        assert len(parts[0]) == 8 and parts[0].isdigit()
        assert len(parts[2]) == 8

    def test_unique_name(self):
        taken = {"deed.pdf", "deed (2).pdf"}
        assert unique_name("deed.pdf", taken) == "deed (3).pdf"
        assert unique_name("README", {"README"}) == "README (2)"
        assert unique_name("new.pdf", taken) == "new.pdf"

    def test_skippable_entries(self):
        assert is_skippable_entry("folder/")
        assert is_skippable_entry("__MACOSX/._deed.pdf")
        assert is_skippable_entry("a/.DS_Store")
        assert is_skippable_entry("a/Thumbs.db")
        assert not is_skippable_entry("Loan 1/deed.pdf")

    def test_file_type(self):
        assert file_type("Deed.PDF") == "pdf"
        assert file_type("README") == ""


# ─────────────────────────────────────────────────────────────────────────────
# Extract
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestExtract:

    async def test_extract_registers_supported_documents(self, blob_store, invoker, limits, options, no_sleep):
        orch, tasks = _manual_orchestrator(blob_store, invoker, limits, options, no_sleep)
        job = await orch.create_job()
        await orch.register_archive_upload(job.id, io.BytesIO(_archive()), "batch.zip", 1234)

        next_kind = await orch.extract(job.id)

        assert next_kind is TaskKind.ANALYZE
        tasks.enqueue.assert_awaited_once_with(TaskKind.ANALYZE, job.id)

        ledger = await _load_ledger(blob_store, job.id)
        assert [d.name for d in ledger.documents] == ["sale_deed.pdf", "sale_deed (2).pdf", "agreement.docx"]
        assert [d.type for d in ledger.documents] == ["pdf", "pdf", "docx"]
        assert all(d.status is DocumentStatus.PENDING for d in ledger.documents)
        assert await blob_store.exists(JobKeys(job.id).extracted("sale_deed (2).pdf"))

        stored = await orch.load_job(job.id)
        assert stored.status is JobStatus.EXTRACTED
        assert stored.total_documents == 3

    async def test_corrupt_archive_fails_job(self, blob_store, invoker, limits, options, no_sleep):
        orch, tasks = _manual_orchestrator(blob_store, invoker, limits, options, no_sleep)
        job = await orch.create_job()
        await blob_store.put(JobKeys(job.id).raw_archive, b"this is not a zip")

        with pytest.raises(ArchiveOpenError):
            await orch.extract(job.id)

        stored = await orch.load_job(job.id)
        assert stored.status is JobStatus.FAILED
        assert "ArchiveOpenError" in stored.error
        tasks.enqueue.assert_not_awaited()
        assert not orch.is_running(job.id)

    async def test_missing_archive_fails_job(self, blob_store, invoker, limits, options, no_sleep):
        orch, _ = _manual_orchestrator(blob_store, invoker, limits, options, no_sleep)
        job = await orch.create_job()

        with pytest.raises(ArchiveOpenError):
            await orch.extract(job.id)

    async def test_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            await orchestrator.extract("20240101_1_deadbeef")


# ─────────────────────────────────────────────────────────────────────────────
# Full pipeline through the inline task queue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestPipeline:

    async def test_upload_to_report(self, orchestrator, inline_queue, blob_store, fake_service):

        job = await orchestrator.create_job()
        await orchestrator.register_archive_upload(job.id, io.BytesIO(_archive()), "batch.zip")

        await orchestrator.tasks.enqueue(TaskKind.EXTRACT, job.id)
        await inline_queue.drain()

        stored = await orchestrator.load_job(job.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.processed_count == 3
        assert stored.total_tokens_input == 300
        assert stored.estimated_cost_usd > 0
        assert stored.report_key == JobKeys(job.id).output()
        assert len(fake_service.calls) == 3

        report = await blob_store.get_json(stored.report_key)
        assert [r["document_name"] for r in report["rows"]] == ["sale_deed.pdf", "sale_deed (2).pdf", "agreement.docx"]
        assert report["summary"]["low"] == 3

        logs = await orchestrator.get_logs(job.id)
        assert any("Report generated" in e["message"] for e in logs)

    async def test_repeated_extract_keeps_ledger(self, orchestrator, inline_queue, blob_store, fake_service):
        job = await orchestrator.create_job()
        await orchestrator.register_archive_upload(job.id, io.BytesIO(_archive()), "batch.zip")
        await orchestrator.tasks.enqueue(TaskKind.EXTRACT, job.id)
        await inline_queue.drain()

        # redelivered extract message on a job that later failed
        stored = await orchestrator.load_job(job.id)
        stored.status = JobStatus.FAILED
        await blob_store.put_json(JobKeys(job.id).metadata, stored.model_dump(mode="json"))

        next_kind = await orchestrator.extract(job.id)
        await inline_queue.drain()

        assert next_kind is TaskKind.ANALYZE
        ledger = await _load_ledger(blob_store, job.id)
        assert [d.status for d in ledger.documents] == [DocumentStatus.COMPLETED] * 3
        assert len(ledger.results) == 3
        assert len(fake_service.calls) == 3

    async def test_failed_document_gets_placeholder_row(self, orchestrator, inline_queue, blob_store, fake_service):
        fake_service.script = [
            fake_service.default,
            RateLimitedError("throttled"), RateLimitedError("throttled"), RateLimitedError("throttled"),
        ]
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.PENDING] * 3)

        await orchestrator.analyze(job_id)
        await inline_queue.drain()

        ledger = await _load_ledger(blob_store, job_id)
        assert [d.status for d in ledger.documents] == [
            DocumentStatus.COMPLETED, DocumentStatus.FAILED, DocumentStatus.COMPLETED,
        ]
        assert len(ledger.results) == 3
        assert ledger.results[1].risk_rating == MANUAL_REVIEW
        assert ledger.results[1].failure_reason.startswith("API call failed")
        assert [f.name for f in ledger.failed_documents] == ["doc01.pdf"]
        assert ledger.report_key is not None


# ─────────────────────────────────────────────────────────────────────────────
# Resume and checkpoints
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestResume:

    async def test_resume_processes_only_pending(self, orchestrator, inline_queue, blob_store, fake_service):
        statuses = [DocumentStatus.COMPLETED] * 6 + [DocumentStatus.FAILED] + [DocumentStatus.PENDING] * 3
        job_id = await _seed_ledger(orchestrator, blob_store, statuses)

        status = await orchestrator.get_status(job_id)
        assert status.interrupted is True
        assert status.pending_count == 3

        result = await orchestrator.resume(job_id)
        await inline_queue.drain()

        assert result.task is TaskKind.ANALYZE
        assert result.pending == 3
        assert len(fake_service.calls) == 3

        ledger = await _load_ledger(blob_store, job_id)
        assert all(not d.is_pending for d in ledger.documents)
        assert len(ledger.results) == 10
        assert ledger.documents[6].status is DocumentStatus.FAILED

        stored = await orchestrator.load_job(job_id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.resume_count == 1

    async def test_crash_between_documents_is_recoverable(
        self, blob_store, invoker, inline_queue, limits, options, no_sleep, fake_service,
    ):

        orch = JobOrchestrator(
            store=blob_store,
            invoker=invoker,
            reports=JsonReportGenerator(blob_store),
            tasks=inline_queue,
            limits=limits,
            options=replace(options, checkpoint_every=2),
            sleep=no_sleep,
        )
        inline_queue.bind(orch.run_task)
        job_id = await _seed_ledger(orch, blob_store, [DocumentStatus.PENDING] * 10)

        # the sleep before the fifth document "kills" the process
        no_sleep.side_effect = [None, None, None, CrashError()]
        with pytest.raises(CrashError):
            await orch.analyze(job_id)

        ledger = await _load_ledger(blob_store, job_id)
        assert ledger.processed_count == 4
        assert len(ledger.pending) == 6
        assert not orch.is_running(job_id)

        no_sleep.side_effect = None
        await orch.resume(job_id)
        await inline_queue.drain()

        ledger = await _load_ledger(blob_store, job_id)
        assert ledger.processed_count == 10
        assert len(fake_service.calls) == 10
        assert ledger.report_key is not None

    async def test_resume_completed_job_is_noop(self, orchestrator, inline_queue, blob_store):
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.PENDING])
        await orchestrator.analyze(job_id)
        await inline_queue.drain()

        result = await orchestrator.resume(job_id)

        assert result.task is None
        assert inline_queue.pending == 0

    async def test_resume_without_pending_goes_to_report(self, orchestrator, inline_queue, blob_store):
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.COMPLETED] * 2)

        result = await orchestrator.resume(job_id)
        await inline_queue.drain()

        assert result.task is TaskKind.GENERATE_REPORT
        assert (await orchestrator.load_job(job_id)).status is JobStatus.COMPLETED


# ─────────────────────────────────────────────────────────────────────────────
# Job-level failures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.pipeline
class TestFatalErrors:

    async def test_consecutive_exhausted_documents_abort(self, orchestrator, blob_store, fake_service, no_sleep):
        fake_service.default = RateLimitedError("throttled", status_code=429)
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.PENDING] * 5)

        with pytest.raises(ServiceExhaustedError):
            await orchestrator.analyze(job_id)

        ledger = await _load_ledger(blob_store, job_id)
        assert len(ledger.failed_documents) == 3
        assert len(ledger.pending) == 2

        stored = await orchestrator.load_job(job_id)
        assert stored.status is JobStatus.FAILED
        assert "ServiceExhaustedError" in stored.error
        assert orchestrator._statuses.get(job_id) is None

    async def test_unexpected_stage_error_fails_job(self, orchestrator, blob_store):
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.COMPLETED] * 2)
        orchestrator._reports.generate = AsyncMock(side_effect=OSError("S3 unavailable"))

        with pytest.raises(StageError) as exc_info:
            await orchestrator.generate_report(job_id)

        assert isinstance(exc_info.value.__cause__, OSError)
        status = await orchestrator.get_status(job_id)
        assert status.job.status is JobStatus.FAILED
        assert "S3 unavailable" in status.job.error
        assert status.running is False
        assert orchestrator._statuses.get(job_id) is None

    async def test_missing_ledger(self, orchestrator):
        job = await orchestrator.create_job()

        with pytest.raises(LedgerNotFoundError):
            await orchestrator.analyze(job.id)

        assert (await orchestrator.load_job(job.id)).status is JobStatus.FAILED

    async def test_corrupt_ledger(self, orchestrator, blob_store):
        job = await orchestrator.create_job()
        await blob_store.put(JobKeys(job.id).ledger, b"{not json")

        with pytest.raises(LedgerCorruptError):
            await orchestrator.analyze(job.id)

    async def test_invalid_ledger_shape(self, orchestrator, blob_store):
        job = await orchestrator.create_job()
        await blob_store.put_json(JobKeys(job.id).ledger, {"documents": [{"name": "x"}]})

        with pytest.raises(LedgerCorruptError):
            await orchestrator.analyze(job.id)


# ─────────────────────────────────────────────────────────────────────────────
# Advisory flag, status and download
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestConcurrencyAndQueries:

    async def test_busy_job_is_rejected(self, orchestrator, blob_store, fake_service):
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.PENDING])
        orchestrator._acquire(job_id)

        with pytest.raises(JobBusyError):
            await orchestrator.analyze(job_id)
        with pytest.raises(JobBusyError):
            await orchestrator.resume(job_id)

        assert fake_service.calls == []
        status = await orchestrator.get_status(job_id)
        assert status.running is True
        assert status.interrupted is False

    async def test_download_requires_report(self, orchestrator, inline_queue, blob_store):
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.PENDING])

        with pytest.raises(ReportNotReadyError):
            await orchestrator.download_url(job_id)

        await orchestrator.analyze(job_id)
        await inline_queue.drain()

        url, key, ttl = await orchestrator.download_url(job_id)
        assert url.startswith("memory://jobs/")
        assert key.endswith("legal_audit_report.json")
        assert ttl == 3600

    async def test_list_jobs(self, orchestrator):
        first = await orchestrator.create_job()
        second = await orchestrator.create_job()

        ids = [j.id for j in await orchestrator.list_jobs()]

        assert set(ids) == {first.id, second.id}

    async def test_events_are_published(self, orchestrator, inline_queue, blob_store):
        job_id = await _seed_ledger(orchestrator, blob_store, [DocumentStatus.PENDING] * 2)
        subscriber = orchestrator.events.subscribe(job_id)

        await orchestrator.analyze(job_id)
        await inline_queue.drain()

        events = []
        while not subscriber.queue.empty():
            events.append(subscriber.queue.get_nowait()["event"])
        assert "processing" in events
        assert "tokens" in events
        assert "analysis-complete" in events
        assert events[-1] == "complete"


@pytest.mark.unit
class TestSingleDocument:

    async def test_register_single_pdf(self, orchestrator, blob_store, small_text_pdf):
        job = await orchestrator.create_job()

        entry, estimate = await orchestrator.register_single_document(job.id, small_text_pdf, "../Title Report.pdf")

        assert entry.name == "Title Report.pdf"
        assert entry.analysis.strategy is StrategyKind.DIRECT_TEXT
        assert estimate.estimated_calls == 1
        assert (await orchestrator.load_job(job.id)).status is JobStatus.EXTRACTED

        strategies = await orchestrator.get_strategy(job.id)
        assert strategies[0][0].name == "Title Report.pdf"

    async def test_rejects_non_pdf(self, orchestrator):
        job = await orchestrator.create_job()

        with pytest.raises(ValueError):
            await orchestrator.register_single_document(job.id, b"PK", "deed.docx")
