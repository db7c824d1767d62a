"""
Job, Document and Ledger — Pydantic models for the processing state machine

Job lifecycle:

  created → uploaded → extracting → extracted → analyzing → analysis-complete
          → generating-report → completed
  (failed is reachable from any active state on a job-level fatal error)

  "interrupted" is a derived view, never stored: 0 < processed < total and
  the job is not running in this process.

Persistence:
  jobs/<id>/metadata.json            Job
  jobs/<id>/processing/queue.json    ProcessingLedger (single source of truth on resume)

Design decisions:
  - Document status only moves forward (pending → completed | pending → failed);
    DocumentEntry enforces this so a resumed run can never reprocess a
    terminal document.
  - Ledger results are ordered by document registration, not completion time.
  - All timestamps are ISO-8601 UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.schemas.records import AnalysisRecord


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    CREATED           = "created"
    UPLOADED          = "uploaded"
    EXTRACTING        = "extracting"
    EXTRACTED         = "extracted"
    ANALYZING         = "analyzing"
    PROCESSING        = "processing"
    ANALYSIS_COMPLETE = "analysis-complete"
    GENERATING_REPORT = "generating-report"
    COMPLETED         = "completed"
    FAILED            = "failed"


ACTIVE_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.EXTRACTING,
    JobStatus.ANALYZING,
    JobStatus.PROCESSING,
    JobStatus.GENERATING_REPORT,
})


class DocumentStatus(str, Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    FAILED    = "failed"


class LedgerStatus(str, Enum):
    READY             = "ready"
    PROCESSING        = "processing"
    ANALYSIS_COMPLETE = "analysis-complete"
    COMPLETED         = "completed"


class StrategyKind(str, Enum):
    DIRECT_TEXT = "direct-text"   # extract once, send text
    DIRECT_PDF  = "direct-pdf"    # send raw PDF bytes once
    TEXT_CHUNK  = "text-chunk"    # paragraph-aligned text chunks
    PAGE_SPLIT  = "page-split"    # page-subset PDF batches


class TaskKind(str, Enum):
    EXTRACT         = "extract"
    ANALYZE         = "analyze"
    GENERATE_REPORT = "generate-report"


# ---------------------------------------------------------------------------
# Strategy descriptor
# ---------------------------------------------------------------------------

class StrategyAnalysis(BaseModel):
    """Decomposition decision for one PDF, cached on its DocumentEntry."""
    file_size:         int
    page_count:        int          = 0
    text_length:       int          = 0
    has_text:          bool         = False
    avg_text_per_page: float        = 0.0
    is_scanned:        bool         = True
    strategy:          StrategyKind
    reason:            str          = ""
    estimated_units:   int          = 1
    warning:           str | None   = None

    # Extracted text is reused by the text strategies; never persisted
    text: str | None = Field(default=None, exclude=True, repr=False)


class ProcessingEstimate(BaseModel):
    strategy:          StrategyKind
    estimated_calls:   int
    estimated_minutes: float
    warnings:          list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Documents and ledger
# ---------------------------------------------------------------------------

class DocumentEntry(BaseModel):
    name:     str
    key:      str
    type:     str                       # lowercased extension without dot
    size:     int
    status:   DocumentStatus            = DocumentStatus.PENDING
    analysis: StrategyAnalysis | None   = None
    error:    str | None                = None

    @property
    def is_pending(self) -> bool:
        return self.status is DocumentStatus.PENDING

    def mark_completed(self) -> None:
        self._ensure_pending(DocumentStatus.COMPLETED)
        self.status = DocumentStatus.COMPLETED
        self.error = None

    def mark_failed(self, reason: str) -> None:
        self._ensure_pending(DocumentStatus.FAILED)
        self.status = DocumentStatus.FAILED
        self.error = reason

    def _ensure_pending(self, target: DocumentStatus) -> None:
        if self.status is not DocumentStatus.PENDING:
            raise ValueError(
                f"Document {self.name!r} cannot move {self.status.value} → {target.value}"
            )


class FailedDocument(BaseModel):
    name:   str
    reason: str


class ProcessingLedger(BaseModel):
    """The job's work ledger, persisted as processing/queue.json."""
    total_documents:     int                    = 0
    processed_count:     int                    = 0
    documents:           list[DocumentEntry]    = Field(default_factory=list)
    results:             list[AnalysisRecord]   = Field(default_factory=list)
    failed_documents:    list[FailedDocument]   = Field(default_factory=list)
    total_tokens_input:  int                    = 0
    total_tokens_output: int                    = 0
    status:              LedgerStatus           = LedgerStatus.READY
    report_key:          str | None             = None
    completed_at:        datetime | None        = None
    updated_at:          datetime               = Field(default_factory=utcnow)

    @property
    def pending(self) -> list[DocumentEntry]:
        return [d for d in self.documents if d.is_pending]

    @property
    def terminal_count(self) -> int:
        return sum(1 for d in self.documents if not d.is_pending)

    def record_result(self, record: AnalysisRecord) -> None:
        """Insert or replace a document's record, keeping registration order."""
        order = {d.name: i for i, d in enumerate(self.documents)}
        self.results = [r for r in self.results if r.document_name != record.document_name]
        self.results.append(record)
        self.results.sort(key=lambda r: order.get(r.document_name or "", len(order)))

    def record_failure(self, name: str, reason: str) -> None:
        self.failed_documents = [f for f in self.failed_documents if f.name != name]
        self.failed_documents.append(FailedDocument(name=name, reason=reason))

    def add_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self.total_tokens_input += input_tokens
        self.total_tokens_output += output_tokens

    def touch(self) -> None:
        self.processed_count = self.terminal_count
        self.total_documents = len(self.documents)
        self.updated_at = utcnow()


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class Job(BaseModel):
    id:                  str
    status:              JobStatus       = JobStatus.CREATED
    created_at:          datetime        = Field(default_factory=utcnow)
    updated_at:          datetime        = Field(default_factory=utcnow)
    completed_at:        datetime | None = None
    created_by:          str | None      = None
    file_name:           str | None      = None
    file_size:           int | None      = None
    total_documents:     int             = 0
    processed_count:     int             = 0
    failed_count:        int             = 0
    total_tokens_input:  int             = 0
    total_tokens_output: int             = 0
    estimated_cost_usd:  float           = 0.0
    report_key:          str | None      = None
    error:               str | None      = None
    resume_count:        int             = 0
    resumed_at:          datetime | None = None

    def is_interrupted(self, running: bool) -> bool:
        if running or self.status in (JobStatus.COMPLETED, JobStatus.FAILED):
            return False
        return 0 < self.processed_count < self.total_documents


# ---------------------------------------------------------------------------
# API response bodies
# ---------------------------------------------------------------------------

class JobStatusResponse(BaseModel):
    job:              Job
    running:          bool
    interrupted:      bool
    pending_count:    int                  = 0
    failed_documents: list[FailedDocument] = Field(default_factory=list)


class JobActionResponse(BaseModel):
    job_id:  str
    status:  JobStatus
    message: str
    task:    TaskKind | None = None


class SingleDocumentResponse(BaseModel):
    job_id:   str
    status:   JobStatus
    document: DocumentEntry
    estimate: ProcessingEstimate


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level:     str      = "info"
    message:   str
    data:      dict[str, Any] | None = None


class DownloadResponse(BaseModel):
    url:        str
    expires_in: int
    key:        str


class ErrorDetail(BaseModel):
    field:   str | None = None
    message: str
    code:    str


class ErrorResponse(BaseModel):
    """Uniform error envelope for all 4xx/5xx responses."""
    error_code: str
    message:    str
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = None


class DocumentStrategyResponse(BaseModel):
    name:     str
    status:   DocumentStatus
    analysis: StrategyAnalysis | None   = None
    estimate: ProcessingEstimate | None = None


class JobErrors:
    """Factories for the request errors raised directly by the jobs router."""

    @staticmethod
    def unsupported_upload(filename: str, expected: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"Expected a {expected} file.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' is not a {expected} file.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def empty_upload(filename: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EMPTY_FILE",
            message=f"'{filename}' is empty.",
            details=[ErrorDetail(field="file", message="Uploaded file has no content.", code="EMPTY_FILE")],
        )

    @staticmethod
    def invalid_state(job_id: str, status: JobStatus, action: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_JOB_STATE",
            message=f"Cannot {action} job {job_id} in status '{status.value}'.",
        )
