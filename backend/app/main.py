"""
FastAPI Application — Entry Point

Legal Audit Pipeline API

Architecture:
  - All routes are versioned under /api/v1/
  - One JobOrchestrator per process, built in the lifespan and stored on
    app.state; routers reach it through app.api.deps.get_orchestrator
  - Stages run on Celery workers (TASK_BACKEND=celery) or in-process
    (TASK_BACKEND=inline, local / degraded mode)
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB (SSE is excluded by content type)
  4. Request logging — structured log per request with latency
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.jobs import router as jobs_router
from app.core.config import settings
from app.core.exceptions import (
    JobBusyError,
    JobNotFoundError,
    LedgerNotFoundError,
    PipelineError,
    ReportNotReadyError,
)
from app.schemas.jobs import ErrorDetail, ErrorResponse
from app.services.jobs import JobOrchestrator, create_orchestrator
from app.workers.dispatch import InlineTaskQueue

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

# Pipeline exceptions surfaced by the API → (HTTP status, error code)
_ERROR_STATUS: list[tuple[type[PipelineError], int, str]] = [
    (JobNotFoundError,    status.HTTP_404_NOT_FOUND, "JOB_NOT_FOUND"),
    (LedgerNotFoundError, status.HTTP_404_NOT_FOUND, "LEDGER_NOT_FOUND"),
    (JobBusyError,        status.HTTP_409_CONFLICT,  "JOB_BUSY"),
    (ReportNotReadyError, status.HTTP_409_CONFLICT,  "REPORT_NOT_READY"),
]


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = create_orchestrator()
    orchestrator: JobOrchestrator = app.state.orchestrator

    logger.info(
        "Starting Legal Audit API | env=%s storage=%s tasks=%s",
        settings.app_env, settings.storage_backend, settings.task_backend,
    )
    logger.info("S3 bucket: %s", settings.s3_bucket)
    logger.info("Model: %s", settings.bedrock_model_id)

    yield

    logger.info("Shutting down Legal Audit API")
    if isinstance(orchestrator.tasks, InlineTaskQueue) and orchestrator.tasks.pending:
        logger.warning(
            "Shutdown with %d inline stages running; resume those jobs after restart",
            orchestrator.tasks.pending,
        )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(orchestrator: JobOrchestrator | None = None) -> FastAPI:
    app = FastAPI(
        title="Legal Audit Pipeline",
        description=(
            "Batch legal document audit: archive extraction, adaptive AI analysis "
            "with checkpointed, resumable jobs, and report generation."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if settings.app_env == "development" else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-User-ID"],
        expose_headers=["X-Request-ID"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        for exc_type, status_code, error_code in _ERROR_STATUS:
            if isinstance(exc, exc_type):
                break
        else:
            status_code, error_code = status.HTTP_500_INTERNAL_SERVER_ERROR, "PIPELINE_ERROR"
            logger.error("Pipeline error | path=%s error=%s", request.url.path, exc)

        body = ErrorResponse(
            error_code=error_code,
            message=str(exc),
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        body = ErrorResponse(
            error_code="INVALID_REQUEST",
            message=str(exc),
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(jobs_router, prefix="/api/v1")

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {
            "status":  "ok",
            "service": "legal-audit-api",
            "storage": settings.storage_backend,
            "tasks":   settings.task_backend,
        }

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
