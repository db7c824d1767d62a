"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : blob_store, limits, no_sleep, fake_service, invoker,
                    orchestrator, inline_queue, sample PDFs / archives

Environment strategy:
  - Storage is the in-memory blob store (STORAGE_BACKEND=memory).
  - Stages run inline on the test event loop (TASK_BACKEND=inline).
  - The AI service is a scripted FakeAnalysisService: no Bedrock calls.
  - Every delay (retry backoff, pacing, cooldown) goes through an AsyncMock
    sleep, so tests never wait and can assert the requested delays.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m pipeline              # full job runs through the orchestrator
  pytest -m integration           # API tests over ASGITransport
"""

from __future__ import annotations

import io
import json
import os
import zipfile
from typing import Any
from unittest.mock import AsyncMock

import pytest

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("STORAGE_BACKEND",       "memory")
os.environ.setdefault("TASK_BACKEND",          "inline")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")

from app.core.config import PipelineLimits  # noqa: E402
from app.core.exceptions import AnalysisServiceError  # noqa: E402
from app.llm.invoker import AnalysisInvoker  # noqa: E402
from app.llm.service import AnalysisService, ServiceResponse  # noqa: E402
from app.services.events import EventBroadcaster, JobLogBuffer, JobStatusStore  # noqa: E402
from app.services.jobs import JobOrchestrator, OrchestratorOptions  # noqa: E402
from app.services.reports import JsonReportGenerator  # noqa: E402
from app.storage.memory import InMemoryBlobStore  # noqa: E402
from app.workers.dispatch import InlineTaskQueue  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# AI service double
# ─────────────────────────────────────────────────────────────────────────────

def record_payload(**overrides: Any) -> dict[str, Any]:
    """A complete, well-formed analysis payload as the AI service returns it."""
    payload = {
        "appl_no":                      "APL-1001",
        "borrower_name":                "R. Sharma",
        "property_address":             "Plot 12, Sector 4",
        "property_type":                "Residential",
        "state":                        "Maharashtra",
        "tsr_date":                     "2023-04-01",
        "ownership_title_chain_status": "Clear",
        "encumbrances_adverse_entries": "No",
        "subsequent_charges":           "No",
        "prior_charge_subsisting":      "No",
        "roc_charge_flag":              "No",
        "litigation_lis_pendens":       "No",
        "mutation_status":              "Completed",
        "revenue_municipal_dues":       "Paid",
        "land_use_zoning_status":       "Residential",
        "stamping_registration_issues": "No",
        "mortgage_perfection_issues":   "No",
        "advocate_adverse_remarks":     "None",
        "risk_rating":                  "Low",
        "enforceability_decision":      "Enforceable",
        "enforceability_rationale":     "Title chain complete",
        "recommended_actions":          "Proceed",
        "confidence_score":             0.9,
    }
    payload.update(overrides)
    return payload


def service_response(payload: dict[str, Any] | None = None, tokens: tuple[int, int] = (100, 20)) -> ServiceResponse:
    return ServiceResponse(
        text=json.dumps(payload if payload is not None else record_payload()),
        input_tokens=tokens[0],
        output_tokens=tokens[1],
    )


class FakeAnalysisService(AnalysisService):
    """
    Scripted AI service. `script` items are consumed in order: a ServiceResponse
    is returned, an exception is raised. When the script is empty `default`
    is used (a ServiceResponse, an exception, or a callable of the call args).
    """

    def __init__(self, script: list | None = None, default: Any = None) -> None:
        self.script = list(script or [])
        self.default = default if default is not None else service_response()
        self.calls: list[dict[str, Any]] = []

    async def analyze(self, content, content_kind, system_instructions) -> ServiceResponse:
        self.calls.append({
            "content":      content,
            "content_kind": content_kind,
            "instructions": system_instructions,
        })
        item = self.script.pop(0) if self.script else self.default
        if callable(item) and not isinstance(item, (ServiceResponse, AnalysisServiceError)):
            item = item(content, content_kind, system_instructions)
        if isinstance(item, BaseException):
            raise item
        return item


# ─────────────────────────────────────────────────────────────────────────────
# Document builders
# ─────────────────────────────────────────────────────────────────────────────

def text_page(paragraph: str = "Title deed clause", lines: int = 20) -> str:
    """Roughly 1 KB of readable text for one PDF page."""
    return "\n".join(f"{paragraph} {i:02d}: the borrower holds clear title." for i in range(lines))


def make_pdf(pages: list[str], attachment_bytes: int = 0) -> bytes:
    """
    Build a PDF with one page per string ("" = blank page, i.e. scanned).
    attachment_bytes adds an incompressible embedded file to inflate the size
    without adding a text layer.
    """
    import fitz

    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text, fontsize=8)
    if attachment_bytes:
        doc.embfile_add("scan.bin", os.urandom(attachment_bytes))
    data = doc.tobytes()
    doc.close()
    return data


def make_docx(paragraphs: list[str]) -> bytes:
    from docx import Document

    document = Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


def make_zip(entries: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def limits() -> PipelineLimits:
    """Production thresholds with zero pacing delays."""
    return PipelineLimits(inter_unit_delay=0.0, large_unit_delay=0.0)


@pytest.fixture
def options() -> OrchestratorOptions:
    return OrchestratorOptions(
        checkpoint_every=5,
        max_consecutive_service_failures=3,
        document_delay=0.0,
        medium_document_delay=0.0,
        large_document_delay=0.0,
        rate_limit_cooldown=0.0,
        model_id="anthropic.claude-3-5-sonnet-20241022-v2:0",
    )


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def fake_service() -> FakeAnalysisService:
    return FakeAnalysisService()


@pytest.fixture
def invoker(fake_service, no_sleep) -> AnalysisInvoker:
    return AnalysisInvoker(fake_service, max_attempts=3, base_delay=2.0, max_delay=60.0, jitter=0.0, sleep=no_sleep)


@pytest.fixture
def inline_queue() -> InlineTaskQueue:
    return InlineTaskQueue()


@pytest.fixture
def orchestrator(blob_store, invoker, inline_queue, limits, options, no_sleep) -> JobOrchestrator:
    orch = JobOrchestrator(
        store=blob_store,
        invoker=invoker,
        reports=JsonReportGenerator(blob_store),
        tasks=inline_queue,
        limits=limits,
        options=options,
        broadcaster=EventBroadcaster(),
        statuses=JobStatusStore(),
        logs=JobLogBuffer(blob_store, flush_every=5),
        sleep=no_sleep,
    )
    inline_queue.bind(orch.run_task)
    return orch


@pytest.fixture
def small_text_pdf() -> bytes:
    return make_pdf([text_page("Sale deed"), text_page("Encumbrance certificate")])


@pytest.fixture
def small_scanned_pdf() -> bytes:
    return make_pdf(["", "", ""])
