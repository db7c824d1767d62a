"""
Paragraph Chunker — text-chunk strategy
═══════════════════════════════════════

  full text ──split on blank lines──▶ paragraphs ──greedy pack──▶ chunks

  • Boundaries are blank lines (regex \\n\\s*\\n); a paragraph is never split.
  • Paragraphs are packed in order until adding the next one would push the
    chunk past `chunk_size`, then the chunk is flushed.
  • Each paragraph keeps its trailing separator, so chunks are exact slices:
        "".join(c.content for c in chunks) == text
  • Size is measured without the chunk's trailing separator. A chunk is
    larger than `chunk_size` only when one paragraph alone is.

Pure function of its input: re-running on the same text yields the same
chunks, which is what makes a resumed document restartable.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class TextChunk:
    """
    One paragraph-aligned slice of a document's extracted text.

    index   : 0-based position in split order
    start   : character offset of content in the source text
    end     : exclusive end offset (text[start:end] == content)
    content : the slice itself
    """
    index:   int
    start:   int
    end:     int
    content: str

    content_kind = "text"

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8"))

    def describe(self) -> str:
        return f"chars {self.start}-{self.end}"


def _paragraph_spans(text: str) -> list[tuple[int, int]]:
    """Spans of each paragraph including its trailing blank-line separator."""
    spans: list[tuple[int, int]] = []
    pos = 0
    for match in _PARAGRAPH_BREAK_RE.finditer(text):
        spans.append((pos, match.end()))
        pos = match.end()
    if pos < len(text):
        spans.append((pos, len(text)))
    return spans


def split_text_chunks(text: str, chunk_size: int) -> list[TextChunk]:
    """Greedily pack blank-line paragraphs into chunks of at most chunk_size chars."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not text or not text.strip():
        return []

    chunks: list[TextChunk] = []
    chunk_start = 0
    chunk_end = 0

    for start, end in _paragraph_spans(text):
        piece = text[start:end]
        current = text[chunk_start:chunk_end]
        if (
            current.strip()
            and piece.strip()
            and len((current + piece).rstrip()) > chunk_size
        ):
            chunks.append(TextChunk(len(chunks), chunk_start, chunk_end, current))
            chunk_start = start
        chunk_end = end

    chunks.append(
        TextChunk(len(chunks), chunk_start, chunk_end, text[chunk_start:chunk_end])
    )

    logger.debug(
        "Chunker | chars=%d chunk_size=%d chunks=%d",
        len(text), chunk_size, len(chunks),
    )
    return chunks
