"""
Pipeline exception hierarchy.

  PipelineError
   ├── AnalysisServiceError          (external AI service, carries status class)
   │    ├── RateLimitedError          429 / throttling / overload  → retried
   │    ├── TransientServiceError     5xx / timeout / connection   → retried
   │    └── PermanentServiceError     4xx bad input / auth         → not retried
   ├── RetriesExhaustedError         unit failed after the retry budget
   ├── ResponseParseError            no structured record in the response
   ├── DocumentProcessingError       corrupt file, zero valid units
   ├── JobNotFoundError
   ├── JobBusyError                  job already running in this process
   ├── ReportNotReadyError
   └── JobFatalError                 aborts the whole job
        ├── ArchiveOpenError
        ├── LedgerNotFoundError
        ├── LedgerCorruptError
        └── ServiceExhaustedError

Unit and document errors are converted to recorded failures at their
boundary; only JobFatalError reaches the orchestrator top level.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all document pipeline errors"""


# ---------------------------------------------------------------------------
# External AI service
# ---------------------------------------------------------------------------

class AnalysisServiceError(PipelineError):
    """Error returned by the AI analysis service."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitedError(AnalysisServiceError):
    retryable = True


class TransientServiceError(AnalysisServiceError):
    retryable = True


class PermanentServiceError(AnalysisServiceError):
    pass


class RetriesExhaustedError(PipelineError):
    """Raised when a unit still fails after the configured attempt budget."""

    def __init__(self, last_error: Exception, attempts: int) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts

    @property
    def rate_limited(self) -> bool:
        return isinstance(self.last_error, RateLimitedError)


class ResponseParseError(PipelineError):
    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


# ---------------------------------------------------------------------------
# Document / job level
# ---------------------------------------------------------------------------

class DocumentProcessingError(PipelineError):
    """A single document could not be analyzed; the job continues."""


class JobNotFoundError(PipelineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobBusyError(PipelineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job is already running: {job_id}")
        self.job_id = job_id


class ReportNotReadyError(PipelineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Report not generated yet: {job_id}")
        self.job_id = job_id


class JobFatalError(PipelineError):
    """Aborts the job and marks it failed."""


class ArchiveOpenError(JobFatalError):
    pass


class LedgerNotFoundError(JobFatalError):
    pass


class LedgerCorruptError(JobFatalError):
    pass


class ServiceExhaustedError(JobFatalError):
    """Too many consecutive documents failed on an exhausted AI service."""


class StageError(JobFatalError):
    """Unexpected error inside a pipeline stage (storage outage, report writer)."""
