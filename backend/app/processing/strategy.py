"""
Strategy Analyzer — choose how to decompose a PDF for analysis
═══════════════════════════════════════════════════════════════

Measurements:
  size         raw byte length
  page_count   PyMuPDF page count (pypdf fallback)
  text_length  length of the extracted native text layer

Scanned ⇔ text_length ≤ min_text_length  OR  avg chars/page < min_chars_per_page

Decision table (first match wins):

  ┌──────────────────────┬───────────┬──────────────────────────────┐
  │ size                 │ scanned?  │ strategy                     │
  ├──────────────────────┼───────────┼──────────────────────────────┤
  │ ≤ direct threshold   │ no        │ direct-text                  │
  │ ≤ direct threshold   │ yes       │ direct-pdf                   │
  │ > direct threshold   │ no        │ text-chunk                   │
  │ anything else        │           │ page-split                   │
  └──────────────────────┴───────────┴──────────────────────────────┘

The analyzer never raises: text-extraction failure falls back to a
page-count-only read, and if that fails too the document is sent whole
as direct-pdf with a warning attached.
"""

from __future__ import annotations

import logging
import math

from app.core.config import PipelineLimits
from app.processing.extractor import count_pdf_pages, extract_pdf_text
from app.schemas.jobs import ProcessingEstimate, StrategyAnalysis, StrategyKind

logger = logging.getLogger(__name__)

# Minutes per AI call used for the user-facing estimate
_MINUTES_PER_TEXT_UNIT = 0.5
_MINUTES_PER_PAGE_BATCH = 1.0
_LARGE_DOCUMENT_PAGES = 50


def analyze_pdf(pdf_bytes: bytes, limits: PipelineLimits) -> StrategyAnalysis:
    """Inspect a PDF and select one of the four processing strategies."""
    size = len(pdf_bytes)
    small = size <= limits.max_direct_pdf_bytes

    try:
        extracted = extract_pdf_text(pdf_bytes)
    except Exception as exc:
        logger.warning("Strategy | text extraction failed size=%d error=%s", size, exc)
        return _fallback_analysis(pdf_bytes, limits, str(exc))

    page_count = extracted.page_count
    text = extracted.text
    text_length = len(text)
    avg = text_length / page_count if page_count else 0.0
    has_text = text_length > limits.min_text_length
    is_scanned = not has_text or avg < limits.min_chars_per_page

    if small and not is_scanned:
        strategy = StrategyKind.DIRECT_TEXT
        reason = "Small text PDF: extracted text sent in one request"
    elif small:
        strategy = StrategyKind.DIRECT_PDF
        reason = "Small scanned PDF: raw document sent in one request"
    elif not is_scanned and text_length > limits.min_text_length:
        strategy = StrategyKind.TEXT_CHUNK
        reason = f"Large text PDF: {text_length} chars split into paragraph-aligned chunks"
    else:
        strategy = StrategyKind.PAGE_SPLIT
        reason = f"Large scanned PDF: {page_count} pages split into page batches"

    analysis = StrategyAnalysis(
        file_size=size,
        page_count=page_count,
        text_length=text_length,
        has_text=has_text,
        avg_text_per_page=round(avg, 1),
        is_scanned=is_scanned,
        strategy=strategy,
        reason=reason,
        estimated_units=estimate_units(strategy, text_length, page_count, limits),
        text=text if strategy in (StrategyKind.DIRECT_TEXT, StrategyKind.TEXT_CHUNK) else None,
    )

    logger.info(
        "Strategy | size=%d pages=%d text=%d avg=%.0f scanned=%s → %s units=%d",
        size, page_count, text_length, avg, is_scanned,
        strategy.value, analysis.estimated_units,
    )
    return analysis


def _fallback_analysis(pdf_bytes: bytes, limits: PipelineLimits, error: str) -> StrategyAnalysis:
    size = len(pdf_bytes)
    try:
        page_count = count_pdf_pages(pdf_bytes)
    except Exception as exc:
        logger.warning("Strategy | page count fallback failed size=%d error=%s", size, exc)
        return StrategyAnalysis(
            file_size=size,
            strategy=StrategyKind.DIRECT_PDF,
            reason="Unreadable PDF: sent whole",
            estimated_units=1,
            warning=f"PDF analysis failed: {error}",
        )

    if size <= limits.max_direct_pdf_bytes:
        strategy = StrategyKind.DIRECT_PDF
        reason = "Text layer unreadable: raw document sent in one request"
    else:
        strategy = StrategyKind.PAGE_SPLIT
        reason = f"Text layer unreadable: {page_count} pages split into page batches"

    return StrategyAnalysis(
        file_size=size,
        page_count=page_count,
        strategy=strategy,
        reason=reason,
        estimated_units=estimate_units(strategy, 0, page_count, limits),
        warning=f"Text extraction failed, page count only: {error}",
    )


def estimate_units(
    strategy: StrategyKind,
    text_length: int,
    page_count: int,
    limits: PipelineLimits,
) -> int:
    if strategy is StrategyKind.TEXT_CHUNK:
        return max(1, math.ceil(text_length / limits.text_chunk_size))
    if strategy is StrategyKind.PAGE_SPLIT:
        pages = min(page_count, limits.max_total_pages)
        return max(1, math.ceil(pages / limits.max_pages_per_batch))
    return 1


def processing_estimate(analysis: StrategyAnalysis) -> ProcessingEstimate:
    """User-facing call and duration estimate for a strategy decision."""
    calls = analysis.estimated_units
    if analysis.strategy is StrategyKind.PAGE_SPLIT:
        minutes = calls * _MINUTES_PER_PAGE_BATCH
    else:
        minutes = calls * _MINUTES_PER_TEXT_UNIT

    warnings: list[str] = []
    if analysis.page_count > _LARGE_DOCUMENT_PAGES:
        warnings.append(
            f"Large document with {analysis.page_count} pages may take several minutes"
        )
    if analysis.warning:
        warnings.append(analysis.warning)

    return ProcessingEstimate(
        strategy=analysis.strategy,
        estimated_calls=calls,
        estimated_minutes=round(minutes, 1),
        warnings=warnings,
    )
