"""
Document Processing Package
════════════════════════════

Decomposes one document into analyzable units and folds their results:

  Strategy Analyzer → Chunk/Batch Splitter → (AI invoker) → Result Merger

Modules
───────
  extractor.py  PyMuPDF / pypdf / python-docx readers
  strategy.py   direct-text | direct-pdf | text-chunk | page-split decision
  chunking.py   paragraph-aligned text chunks
  batching.py   page-subset PDF batches with single-page degrade
  merge.py      field-family merge of per-unit AnalysisRecords

Everything here is synchronous and free of I/O beyond the bytes it is
given; async callers run the heavy parts in a thread executor.
"""

from app.processing.batching import BatchSplit, PageBatch, plan_page_ranges, split_pdf_into_batches
from app.processing.chunking import TextChunk, split_text_chunks
from app.processing.merge import merge_records
from app.processing.strategy import analyze_pdf, processing_estimate

__all__ = [
    "BatchSplit",
    "PageBatch",
    "TextChunk",
    "analyze_pdf",
    "merge_records",
    "plan_page_ranges",
    "processing_estimate",
    "split_pdf_into_batches",
    "split_text_chunks",
]
