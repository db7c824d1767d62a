"""
Per-document analysis pass
══════════════════════════

  bytes ──▶ classify by type
              │
              ├─ .pdf   → Strategy Analyzer (cached on the DocumentEntry)
              │             direct-text  → 1 text unit
              │             direct-pdf   → 1 pdf unit
              │             text-chunk   → N paragraph chunks
              │             page-split   → N page batches
              ├─ .docx  → text (chunked when larger than the chunk size)
              └─ image  → 1 image unit
                           │
              units in split order ─▶ AnalysisInvoker ─▶ pacing gap ─▶ next unit
                           │
                   Result Merger ─▶ provenance stamp ─▶ DocumentOutcome

A failing unit is recorded and skipped; the document only fails when no
unit produced a record. Errors that prevent building units at all (corrupt
file, unsupported type) raise DocumentProcessingError for the orchestrator
to record.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from app.core.config import PipelineLimits
from app.core.exceptions import (
    AnalysisServiceError,
    DocumentProcessingError,
    ResponseParseError,
    RetriesExhaustedError,
)
from app.llm.invoker import AnalysisInvoker, Emit, pacing_delay
from app.llm.prompts import UnitContext, build_system_instructions
from app.llm.service import CONTENT_PDF, CONTENT_TEXT
from app.processing.batching import split_pdf_into_batches
from app.processing.chunking import split_text_chunks
from app.processing.extractor import extract_docx_text, extract_pdf_text
from app.processing.merge import merge_records
from app.processing.strategy import analyze_pdf
from app.schemas.jobs import DocumentEntry, StrategyAnalysis, StrategyKind, utcnow
from app.schemas.records import AnalysisRecord

logger = logging.getLogger(__name__)

IMAGE_TYPES: dict[str, str] = {
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
}
SUPPORTED_TYPES: frozenset[str] = frozenset({"pdf", "docx", *IMAGE_TYPES})


@dataclass
class Unit:
    """Transport-neutral view of a text chunk, page batch or whole document."""
    index:   int
    content: str | bytes
    kind:    str
    size:    int
    span:    str | None = None


@dataclass
class UnitFailure:
    index:  int
    error:  str
    kind:   str   # exception class name


@dataclass
class DocumentOutcome:
    record:        AnalysisRecord | None
    strategy:      StrategyAnalysis | None
    units_total:   int
    input_tokens:  int = 0
    output_tokens: int = 0
    failures:      list[UnitFailure] = field(default_factory=list)
    exhausted:     bool = False   # every unit failed on an exhausted AI service
    rate_limited:  bool = False   # at least one unit exhausted retries on rate limits

    @property
    def succeeded(self) -> bool:
        return self.record is not None and self.record.has_confidence

    @property
    def failure_reason(self) -> str:
        if self.record is None:
            last = self.failures[-1].error if self.failures else "no units"
            return f"API call failed: {last}"
        if self.record.confidence_score is None:
            return "Missing confidence score"
        return "Zero confidence score"


class DocumentAnalyzer:

    def __init__(
        self,
        invoker: AnalysisInvoker,
        limits:  PipelineLimits,
        master_prompt: dict[str, Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._invoker = invoker
        self._limits = limits
        self._master = master_prompt
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Unit construction
    # ------------------------------------------------------------------

    async def plan(self, entry: DocumentEntry, data: bytes) -> list[Unit]:
        """Decide the decomposition for one document and build its units."""
        loop = asyncio.get_running_loop()
        doc_type = entry.type.lower()

        if doc_type == "pdf":
            if entry.analysis is None:
                entry.analysis = await loop.run_in_executor(
                    None, analyze_pdf, data, self._limits,
                )
            return await self._pdf_units(entry.analysis, data)

        if doc_type == "docx":
            try:
                text = await loop.run_in_executor(None, extract_docx_text, data)
            except Exception as exc:
                raise DocumentProcessingError(f"Unreadable DOCX: {exc}") from exc
            return self._text_units(text)

        if doc_type in IMAGE_TYPES:
            return [Unit(0, data, IMAGE_TYPES[doc_type], len(data))]

        raise DocumentProcessingError(f"Unsupported document type: {entry.type}")

    async def _pdf_units(self, analysis: StrategyAnalysis, data: bytes) -> list[Unit]:
        loop = asyncio.get_running_loop()

        if analysis.strategy is StrategyKind.DIRECT_PDF:
            return [Unit(0, data, CONTENT_PDF, len(data))]

        if analysis.strategy is StrategyKind.PAGE_SPLIT:
            split = await loop.run_in_executor(None, split_pdf_into_batches, data, self._limits)
            if not split.batches:
                raise DocumentProcessingError("Page split produced no batches")
            return [
                Unit(b.index, b.content, CONTENT_PDF, b.size_bytes, b.describe())
                for b in split.batches
            ]

        text = analysis.text
        if text is None:
            # Cached strategies from a persisted ledger carry no text
            try:
                text = (await loop.run_in_executor(None, extract_pdf_text, data)).text
            except Exception as exc:
                raise DocumentProcessingError(f"Text extraction failed: {exc}") from exc

        if analysis.strategy is StrategyKind.DIRECT_TEXT:
            return [Unit(0, text, CONTENT_TEXT, len(text.encode("utf-8")))]
        return self._text_units(text)

    def _text_units(self, text: str) -> list[Unit]:
        if not text.strip():
            raise DocumentProcessingError("No extractable text")
        if len(text) <= self._limits.text_chunk_size:
            return [Unit(0, text, CONTENT_TEXT, len(text.encode("utf-8")))]
        return [
            Unit(c.index, c.content, CONTENT_TEXT, c.size_bytes, c.describe())
            for c in split_text_chunks(text, self._limits.text_chunk_size)
        ]

    # ------------------------------------------------------------------
    # Analysis pass
    # ------------------------------------------------------------------

    async def analyze(
        self,
        entry: DocumentEntry,
        data:  bytes,
        emit:  Emit | None = None,
    ) -> DocumentOutcome:
        units = await self.plan(entry, data)
        total = len(units)
        outcome = DocumentOutcome(record=None, strategy=entry.analysis, units_total=total)
        records: list[AnalysisRecord] = []

        logger.info(
            "Document | name=%s type=%s strategy=%s units=%d",
            entry.name, entry.type,
            entry.analysis.strategy.value if entry.analysis else "-", total,
        )

        for position, unit in enumerate(units):
            label = f"{entry.name}#{position + 1}"
            context = UnitContext(position, total, unit.span) if total > 1 else None
            instructions = build_system_instructions(self._master, context)

            try:
                result = await self._invoker.analyze_unit(
                    unit.content, unit.kind, instructions, label=label, emit=emit,
                )
            except (AnalysisServiceError, RetriesExhaustedError, ResponseParseError) as exc:
                logger.warning("Document | unit failed %s: %s", label, exc)
                outcome.failures.append(UnitFailure(position, str(exc), type(exc).__name__))
                if isinstance(exc, RetriesExhaustedError) and exc.rate_limited:
                    outcome.rate_limited = True
            else:
                records.append(result.record)
                outcome.input_tokens += result.input_tokens
                outcome.output_tokens += result.output_tokens

            if emit is not None and total > 1:
                emit("chunk-progress", {
                    "document":  entry.name,
                    "unit":      position + 1,
                    "total":     total,
                    "span":      unit.span,
                    "succeeded": len(records),
                    "failed":    len(outcome.failures),
                })

            if position < total - 1:
                await self._sleep(pacing_delay(unit.size, self._limits))

        if not records:
            outcome.exhausted = bool(outcome.failures) and all(
                f.kind == RetriesExhaustedError.__name__ for f in outcome.failures
            )
            return outcome

        merged = merge_records(records)
        outcome.record = merged.model_copy(update={
            "document_name":       entry.name,
            "processed_at":        utcnow(),
            "tokens_input":        outcome.input_tokens,
            "tokens_output":       outcome.output_tokens,
            "chunked":             total > 1,
            "chunks_processed":    len(records),
            "chunks_failed":       len(outcome.failures),
            "processing_strategy": entry.analysis.strategy.value if entry.analysis else entry.type,
        })
        return outcome
