"""
Page Batcher — page-split strategy
══════════════════════════════════

  pages [0, P) ──cap at max_total_pages──▶ runs of ≤ max_pages_per_batch
                                             │
                              materialize each run as its own PDF (pypdf)
                                             │
                 ┌───────────────────────────┴──────────────────────────┐
                 │ size ≤ max_batch_bytes                               │ size > max_batch_bytes
                 │                                                      │ or creation raised
                 ▼                                                      ▼
             one batch                                   degrade: one batch per page
                                                         (a page that cannot be written
                                                          is recorded and skipped)

Emitted batches cover [0, min(P, max_total_pages)) in order with no overlap;
the only gaps are pages recorded in `failed_pages`. Pages beyond the ceiling
are recorded in `dropped_pages` and logged, never silently analyzed.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field

from app.core.config import PipelineLimits
from app.core.exceptions import DocumentProcessingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageBatch:
    """
    A page-subset PDF sent to the AI service as one unit.

    start_page / end_page are 0-based and half-open: [start_page, end_page).
    """
    index:       int
    start_page:  int
    end_page:    int
    total_pages: int
    content:     bytes = field(repr=False)

    content_kind = "pdf"

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    @property
    def page_range(self) -> tuple[int, int]:
        """1-based inclusive page range for prompts and logs."""
        return self.start_page + 1, self.end_page

    def describe(self) -> str:
        first, last = self.page_range
        if first == last:
            return f"page {first} of {self.total_pages}"
        return f"pages {first}-{last} of {self.total_pages}"


@dataclass
class BatchSplit:
    batches:       list[PageBatch]
    total_pages:   int
    failed_pages:  list[int] = field(default_factory=list)   # 0-based
    dropped_pages: int       = 0


def plan_page_ranges(
    total_pages: int,
    pages_per_batch: int,
    max_total_pages: int,
) -> list[tuple[int, int]]:
    """Partition [0, min(total, ceiling)) into half-open runs of ≤ pages_per_batch."""
    if pages_per_batch <= 0:
        raise ValueError("pages_per_batch must be positive")
    analyzed = max(0, min(total_pages, max_total_pages))
    return [
        (start, min(start + pages_per_batch, analyzed))
        for start in range(0, analyzed, pages_per_batch)
    ]


def _write_pages(reader, start: int, end: int) -> bytes:
    from pypdf import PdfWriter

    writer = PdfWriter()
    for page_index in range(start, end):
        writer.add_page(reader.pages[page_index])
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def split_pdf_into_batches(pdf_bytes: bytes, limits: PipelineLimits) -> BatchSplit:
    """Materialize page runs as standalone PDFs, degrading to single pages when needed."""
    from pypdf import PdfReader

    try:
        reader = PdfReader(io.BytesIO(pdf_bytes), strict=False)
        total_pages = len(reader.pages)
    except Exception as exc:
        raise DocumentProcessingError(f"Cannot open PDF for page split: {exc}") from exc

    dropped = max(0, total_pages - limits.max_total_pages)
    if dropped:
        logger.warning(
            "Batcher | pages=%d exceeds ceiling=%d, dropping %d trailing pages",
            total_pages, limits.max_total_pages, dropped,
        )

    split = BatchSplit(batches=[], total_pages=total_pages, dropped_pages=dropped)

    def _emit(start: int, end: int, content: bytes) -> None:
        split.batches.append(PageBatch(
            index=len(split.batches),
            start_page=start,
            end_page=end,
            total_pages=total_pages,
            content=content,
        ))

    for start, end in plan_page_ranges(
        total_pages, limits.max_pages_per_batch, limits.max_total_pages
    ):
        try:
            content = _write_pages(reader, start, end)
        except Exception as exc:
            logger.warning(
                "Batcher | batch pages=%d-%d failed (%s), degrading to single pages",
                start + 1, end, exc,
            )
            content = None

        if content is not None and (len(content) <= limits.max_batch_bytes or end - start == 1):
            if len(content) > limits.max_batch_bytes:
                logger.warning(
                    "Batcher | page %d alone is %d bytes (limit %d), sending as is",
                    start + 1, len(content), limits.max_batch_bytes,
                )
            _emit(start, end, content)
            continue

        if content is not None:
            logger.info(
                "Batcher | batch pages=%d-%d is %d bytes (limit %d), degrading to single pages",
                start + 1, end, len(content), limits.max_batch_bytes,
            )

        for page_index in range(start, end):
            try:
                _emit(page_index, page_index + 1, _write_pages(reader, page_index, page_index + 1))
            except Exception as exc:
                logger.error("Batcher | page %d skipped: %s", page_index + 1, exc)
                split.failed_pages.append(page_index)

    logger.info(
        "Batcher | pages=%d batches=%d failed_pages=%d dropped=%d",
        total_pages, len(split.batches), len(split.failed_pages), dropped,
    )
    return split
