"""
Unit Tests — Strategy Analyzer
══════════════════════════════
Decision table (size × text density) and the degraded fallbacks.

Thresholds are shrunk through PipelineLimits so "large" documents stay a
few hundred kilobytes.
"""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import patch

import pytest

from app.core.config import PipelineLimits
from app.processing.strategy import analyze_pdf, estimate_units, processing_estimate
from app.schemas.jobs import StrategyAnalysis, StrategyKind
from tests.conftest import make_pdf, text_page


@pytest.mark.unit
class TestDecisionTable:

    def test_small_text_pdf_is_direct_text(self, limits, small_text_pdf):
        analysis = analyze_pdf(small_text_pdf, limits)

        assert analysis.strategy is StrategyKind.DIRECT_TEXT
        assert analysis.page_count == 2
        assert analysis.has_text is True
        assert analysis.is_scanned is False
        assert analysis.estimated_units == 1
        assert analysis.text and "Sale deed" in analysis.text

    def test_small_scanned_pdf_is_direct_pdf(self, limits, small_scanned_pdf):
        analysis = analyze_pdf(small_scanned_pdf, limits)

        assert analysis.strategy is StrategyKind.DIRECT_PDF
        assert analysis.is_scanned is True
        assert analysis.text_length == 0
        assert analysis.text is None

    def test_large_text_pdf_is_text_chunk(self, small_text_pdf):
        limits = PipelineLimits(max_direct_pdf_bytes=1_000, text_chunk_size=500)

        analysis = analyze_pdf(small_text_pdf, limits)

        assert analysis.strategy is StrategyKind.TEXT_CHUNK
        assert analysis.estimated_units >= 2
        assert analysis.text is not None

    def test_large_scanned_pdf_is_page_split(self):
        pdf = make_pdf(["", "", ""], attachment_bytes=60_000)
        limits = PipelineLimits(max_direct_pdf_bytes=50_000)

        analysis = analyze_pdf(pdf, limits)

        assert analysis.file_size > limits.max_direct_pdf_bytes
        assert analysis.strategy is StrategyKind.PAGE_SPLIT
        assert analysis.page_count == 3
        assert analysis.estimated_units == 1
        assert analysis.text is None

    def test_sparse_text_counts_as_scanned(self, limits):
        # plenty of text overall, but spread thin over many pages
        pages = [text_page(lines=12)] + [""] * 40
        analysis = analyze_pdf(make_pdf(pages), limits)

        assert analysis.has_text is True
        assert analysis.avg_text_per_page < limits.min_chars_per_page
        assert analysis.strategy is StrategyKind.DIRECT_PDF

    def test_text_is_not_serialized(self, limits, small_text_pdf):
        analysis = analyze_pdf(small_text_pdf, limits)
        assert "text" not in analysis.model_dump()


@pytest.mark.unit
class TestFallbacks:

    def test_text_extraction_failure_uses_page_count(self, limits, small_scanned_pdf):
        with patch("app.processing.strategy.extract_pdf_text", side_effect=RuntimeError("bad xref")):
            analysis = analyze_pdf(small_scanned_pdf, limits)

        assert analysis.strategy is StrategyKind.DIRECT_PDF
        assert analysis.page_count == 3
        assert "bad xref" in analysis.warning

    def test_large_unreadable_pdf_falls_back_to_page_split(self, small_scanned_pdf):
        limits = PipelineLimits(max_direct_pdf_bytes=10)
        with patch("app.processing.strategy.extract_pdf_text", side_effect=RuntimeError("bad xref")):
            analysis = analyze_pdf(small_scanned_pdf, limits)

        assert analysis.strategy is StrategyKind.PAGE_SPLIT
        assert analysis.estimated_units == 1

    def test_garbage_bytes_never_raise(self, limits):
        analysis = analyze_pdf(b"definitely not a pdf", limits)

        assert analysis.strategy is StrategyKind.DIRECT_PDF
        assert analysis.estimated_units == 1
        assert analysis.warning


@pytest.mark.unit
class TestEstimates:

    def test_units_for_text_chunk(self):
        limits = PipelineLimits(text_chunk_size=40_000)
        assert estimate_units(StrategyKind.TEXT_CHUNK, 200_000, 80, limits) == 5
        assert estimate_units(StrategyKind.TEXT_CHUNK, 200_001, 80, limits) == 6

    def test_units_for_page_split_respect_ceiling(self):
        limits = PipelineLimits(max_pages_per_batch=5, max_total_pages=500)
        assert estimate_units(StrategyKind.PAGE_SPLIT, 0, 42, limits) == 9
        assert estimate_units(StrategyKind.PAGE_SPLIT, 0, 900, limits) == 100

    def test_processing_estimate_warns_on_long_documents(self):
        analysis = StrategyAnalysis(
            file_size=30_000_000,
            page_count=120,
            strategy=StrategyKind.PAGE_SPLIT,
            estimated_units=24,
        )
        estimate = processing_estimate(analysis)

        assert estimate.estimated_calls == 24
        assert estimate.estimated_minutes == pytest.approx(24.0)
        assert any("120 pages" in w for w in estimate.warnings)

    def test_processing_estimate_for_text(self):
        analysis = StrategyAnalysis(file_size=1000, page_count=2, strategy=StrategyKind.DIRECT_TEXT)
        estimate = processing_estimate(analysis)

        assert estimate.estimated_minutes == pytest.approx(0.5)
        assert estimate.warnings == []

    def test_limits_are_immutable(self, limits):
        with pytest.raises(Exception):
            limits.max_total_pages = 1
        assert replace(limits, max_total_pages=1).max_total_pages == 1
