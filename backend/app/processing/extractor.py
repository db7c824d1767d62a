"""
Text Extraction — PDF and DOCX readers
══════════════════════════════════════

  PyMuPDF (fitz)   native PDF text layer, one string per page
  pypdf            page-count-only fallback when PyMuPDF cannot parse the file
  python-docx      paragraph text for .docx archive entries

All functions here are blocking; async callers run them in the default
thread executor. They raise on unreadable input; the Strategy Analyzer
owns the fallback policy, not this module.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n"


@dataclass
class PdfText:
    """
    Text extracted from every page of a PDF.

    pages : raw text per page (empty string for image-only pages)
    """
    pages: list[str]

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def text(self) -> str:
        """All non-empty pages joined by a blank line (a paragraph boundary)."""
        return PAGE_SEPARATOR.join(p for p in self.pages if p.strip())

    @property
    def text_length(self) -> int:
        return len(self.text)


def extract_pdf_text(pdf_bytes: bytes) -> PdfText:
    """Read the native text layer of every page with PyMuPDF."""
    import fitz  # PyMuPDF; imported here to avoid module-level import cost

    pages: list[str] = []
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        for page in doc:
            pages.append((page.get_text("text") or "").strip())
    return PdfText(pages=pages)


def count_pdf_pages(pdf_bytes: bytes) -> int:
    """Page count via pypdf in non-strict mode (tolerates damaged xref tables)."""
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(pdf_bytes), strict=False)
    return len(reader.pages)


def extract_docx_text(data: bytes) -> str:
    """Extract text from DOCX bytes using python-docx, one paragraph per block."""
    import docx

    doc = docx.Document(io.BytesIO(data))
    return PAGE_SEPARATOR.join(para.text for para in doc.paragraphs if para.text.strip())
