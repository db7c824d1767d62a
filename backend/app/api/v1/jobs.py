"""
Audit Jobs API Router
/api/v1/jobs

  POST /jobs                          create a job
  GET  /jobs                          list jobs (newest first)
  POST /jobs/{id}/upload              zip archive → uploaded
  POST /jobs/{id}/upload-pdf          single large PDF → extracted (+ strategy estimate)
  GET  /jobs/{id}/strategy            per-document strategy and estimates
  POST /jobs/{id}/extract             ┐
  POST /jobs/{id}/analyze             │ 202; stage runs on the task substrate
  POST /jobs/{id}/resume              │ 409 when the job is running in this process
  POST /jobs/{id}/generate-report     ┘
  GET  /jobs/{id}/status              status with interrupted/running view
  GET  /jobs/{id}/logs                persisted job log
  GET  /jobs/{id}/events              SSE stream of job events
  GET  /jobs/{id}/download            signed report URL

Job-level errors (not found, busy, report not ready) are raised by the
orchestrator and converted by the application exception handlers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from app.api.deps import Orchestrator
from app.core.exceptions import JobBusyError
from app.schemas.jobs import (
    DocumentStrategyResponse,
    DownloadResponse,
    ErrorResponse,
    Job,
    JobActionResponse,
    JobErrors,
    JobStatus,
    JobStatusResponse,
    SingleDocumentResponse,
    TaskKind,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/jobs",
    tags=["Audit Jobs"],
)

_HEARTBEAT_SECONDS = 15.0
_TERMINAL_EVENTS = frozenset({"complete", "error"})

# Statuses from which each manually triggered stage may start
_STAGE_ENTRY: dict[TaskKind, frozenset[JobStatus]] = {
    TaskKind.EXTRACT: frozenset({JobStatus.UPLOADED, JobStatus.FAILED}),
    TaskKind.ANALYZE: frozenset({
        JobStatus.EXTRACTED, JobStatus.ANALYZING, JobStatus.PROCESSING,
        JobStatus.ANALYSIS_COMPLETE, JobStatus.FAILED,
    }),
    TaskKind.GENERATE_REPORT: frozenset({
        JobStatus.ANALYSIS_COMPLETE, JobStatus.GENERATING_REPORT,
        JobStatus.COMPLETED, JobStatus.FAILED,
    }),
}

_ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Job not found"},
    409: {"model": ErrorResponse, "description": "Job is running or in the wrong state"},
}


# ---------------------------------------------------------------------------
# Create / list
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=Job,
    status_code=status.HTTP_201_CREATED,
    summary="Create an audit job",
)
async def create_job(request: Request, orchestrator: Orchestrator) -> Job:
    return await orchestrator.create_job(created_by=request.headers.get("X-User-ID"))


@router.get("", response_model=list[Job], summary="List audit jobs")
async def list_jobs(orchestrator: Orchestrator) -> list[Job]:
    return await orchestrator.list_jobs()


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/upload",
    response_model=Job,
    summary="Upload the document archive (.zip)",
    responses={400: {"model": ErrorResponse}, **_ERROR_RESPONSES},
)
async def upload_archive(
    job_id: str,
    orchestrator: Orchestrator,
    file: UploadFile = File(..., description="Zip archive of documents"),
) -> Job:
    filename = file.filename or "documents.zip"
    if not filename.lower().endswith(".zip"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JobErrors.unsupported_upload(filename, "ZIP").model_dump(),
        )
    if file.size == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JobErrors.empty_upload(filename).model_dump(),
        )

    await file.seek(0)
    return await orchestrator.register_archive_upload(job_id, file.file, filename, file.size)


@router.post(
    "/{job_id}/upload-pdf",
    response_model=SingleDocumentResponse,
    summary="Upload a single large PDF",
    description="Skips extraction; the response carries the chosen strategy and an estimate.",
    responses={400: {"model": ErrorResponse}, **_ERROR_RESPONSES},
)
async def upload_pdf(
    job_id: str,
    orchestrator: Orchestrator,
    file: UploadFile = File(..., description="PDF document"),
) -> SingleDocumentResponse:
    filename = file.filename or "document.pdf"
    if not filename.lower().endswith(".pdf"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JobErrors.unsupported_upload(filename, "PDF").model_dump(),
        )
    data = await file.read()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=JobErrors.empty_upload(filename).model_dump(),
        )

    entry, estimate = await orchestrator.register_single_document(job_id, data, filename)
    return SingleDocumentResponse(
        job_id=job_id,
        status=JobStatus.EXTRACTED,
        document=entry,
        estimate=estimate,
    )


@router.get(
    "/{job_id}/strategy",
    response_model=list[DocumentStrategyResponse],
    summary="Per-document processing strategy",
    responses=_ERROR_RESPONSES,
)
async def get_strategy(job_id: str, orchestrator: Orchestrator) -> list[DocumentStrategyResponse]:
    return [
        DocumentStrategyResponse(
            name=entry.name,
            status=entry.status,
            analysis=entry.analysis,
            estimate=estimate,
        )
        for entry, estimate in await orchestrator.get_strategy(job_id)
    ]


# ---------------------------------------------------------------------------
# Stage triggers
# ---------------------------------------------------------------------------

async def _trigger(orchestrator, job_id: str, kind: TaskKind) -> JobActionResponse:
    if orchestrator.is_running(job_id):
        raise JobBusyError(job_id)

    job = await orchestrator.load_job(job_id)
    allowed = job.status in _STAGE_ENTRY[kind]
    # a failed job with a ledger is resumed, never re-extracted
    if allowed and kind is TaskKind.EXTRACT and job.status is JobStatus.FAILED:
        allowed = not await orchestrator.has_ledger(job_id)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=JobErrors.invalid_state(job_id, job.status, kind.value).model_dump(),
        )

    await orchestrator.tasks.enqueue(kind, job_id)
    logger.info("Stage requested | job=%s kind=%s", job_id, kind.value)
    return JobActionResponse(
        job_id=job_id,
        status=job.status,
        message=f"{kind.value} scheduled",
        task=kind,
    )


@router.post(
    "/{job_id}/extract",
    response_model=JobActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Extract the uploaded archive",
    responses=_ERROR_RESPONSES,
)
async def extract_job(job_id: str, orchestrator: Orchestrator) -> JobActionResponse:
    return await _trigger(orchestrator, job_id, TaskKind.EXTRACT)


@router.post(
    "/{job_id}/analyze",
    response_model=JobActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Analyze pending documents",
    responses=_ERROR_RESPONSES,
)
async def analyze_job(job_id: str, orchestrator: Orchestrator) -> JobActionResponse:
    return await _trigger(orchestrator, job_id, TaskKind.ANALYZE)


@router.post(
    "/{job_id}/generate-report",
    response_model=JobActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Generate the audit report",
    responses=_ERROR_RESPONSES,
)
async def generate_report(job_id: str, orchestrator: Orchestrator) -> JobActionResponse:
    return await _trigger(orchestrator, job_id, TaskKind.GENERATE_REPORT)


@router.post(
    "/{job_id}/resume",
    response_model=JobActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume an interrupted or failed job from its ledger",
    responses=_ERROR_RESPONSES,
)
async def resume_job(job_id: str, orchestrator: Orchestrator) -> JobActionResponse:
    result = await orchestrator.resume(job_id)
    job = await orchestrator.load_job(job_id)
    return JobActionResponse(
        job_id=job_id,
        status=job.status,
        message=result.message,
        task=result.task,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}/status",
    response_model=JobStatusResponse,
    summary="Job status",
    responses=_ERROR_RESPONSES,
)
async def get_status(job_id: str, orchestrator: Orchestrator) -> JobStatusResponse:
    return await orchestrator.get_status(job_id)


@router.get("/{job_id}/logs", summary="Persisted job log", responses=_ERROR_RESPONSES)
async def get_logs(
    job_id: str,
    orchestrator: Orchestrator,
    limit: int | None = Query(None, ge=1, le=1000),
) -> list[dict]:
    return await orchestrator.get_logs(job_id, limit)


@router.get(
    "/{job_id}/download",
    response_model=DownloadResponse,
    summary="Signed download URL for the report",
    responses=_ERROR_RESPONSES,
)
async def download_report(job_id: str, orchestrator: Orchestrator) -> DownloadResponse:
    url, key, ttl = await orchestrator.download_url(job_id)
    return DownloadResponse(url=url, expires_in=ttl, key=key)


@router.get(
    "/{job_id}/events",
    summary="SSE stream of job events",
    response_class=StreamingResponse,
    responses=_ERROR_RESPONSES,
)
async def stream_job_events(
    job_id: str,
    request: Request,
    orchestrator: Orchestrator,
) -> StreamingResponse:
    """
    SSE endpoint — progress, log, tokens, chunk-progress, retry and terminal
    events for one job. A keepalive comment is sent when the job is quiet.
    """
    job = await orchestrator.load_job(job_id)
    subscriber = orchestrator.events.subscribe(job_id)

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            yield _sse_event("connected", {"job_id": job_id, "status": job.status.value})

            while True:
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected | job=%s", job_id)
                    break

                try:
                    message = await asyncio.wait_for(subscriber.queue.get(), timeout=_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue

                yield _sse_event(message["event"], message)
                if message["event"] in _TERMINAL_EVENTS:
                    break
        finally:
            orchestrator.events.unsubscribe(subscriber)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def _sse_event(event_name: str, data: dict) -> str:
    """Format a Server-Sent Event with event name and JSON data."""
    return f"event: {event_name}\ndata: {json.dumps(data, default=str)}\n\n"
