"""Paragraph-aware text chunker with overlapping windows.

Text is normalised (CRLF to LF, trimmed) and packed paragraph by paragraph
into chunks of at most ``chunk_size`` characters. Each new chunk is seeded
with a tail of the previous one so context carries across boundaries.
When that tail plus the next paragraph would exceed ``chunk_size``, the tail
is dropped and the new chunk starts at the paragraph itself; the size bound
wins over overlap.
Paragraphs longer than a chunk are cut on sentence, then word, then hard
character boundaries.

Offsets refer to the normalised text. Consecutive spans touch or overlap,
so together they cover the text without gaps.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class TextChunk:
    """One chunk of normalised text and its ``[start_char, end_char)`` span."""

    content: str
    chunk_index: int
    start_char: int
    end_char: int

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.content)


def estimate_tokens(text: str) -> int:
    """Approximate token count: 4 characters ≈ 1 token, rounded up."""
    return math.ceil(len(text) / 4)


def normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").strip()


class Chunker:
    """Split text into bounded, overlapping chunks.

    Args:
        chunk_size: Maximum characters per chunk.
        overlap: Characters carried from the end of one chunk into the next.
        separator: Paragraph separator.
    """

    def __init__(
        self, chunk_size: int = 1000, overlap: int = 200, separator: str = "\n\n"
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0 <= overlap < chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")
        if not separator:
            raise ValueError("separator must not be empty")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.separator = separator

    def split(self, text: str) -> list[TextChunk]:
        """Return the ordered chunks for *text* (empty list for blank input)."""
        normalized = normalize_text(text or "")
        if not normalized:
            return []
        if len(normalized) <= self.chunk_size:
            return [TextChunk(normalized, 0, 0, len(normalized))]

        chunks: list[TextChunk] = []

        def emit(content: str, start: int, end: int) -> None:
            content = content.strip()
            if content:
                chunks.append(TextChunk(content, len(chunks), start, end))

        size, sep = self.chunk_size, self.separator
        buf = ""
        buf_start = 0
        # False while the buffer holds nothing but the carried-over tail.
        fresh = False

        for para_start, para in _paragraphs(normalized, sep):
            piece = para + sep
            if len(buf) + len(piece) <= size:
                buf += piece
                fresh = True
                continue

            if fresh:
                emit(buf, buf_start, para_start)
                tail = self._overlap_tail(buf)
                buf_start = max(buf_start, para_start - len(tail))
                buf = tail
                fresh = False

            if len(piece) > size:
                for sub, sub_start, sub_end in self._split_long(para):
                    emit(sub, para_start + sub_start, para_start + sub_end)
                buf = ""
                buf_start = para_start + len(para)
            elif len(buf) + len(piece) <= size:
                buf += piece
                fresh = True
            else:
                buf = piece
                buf_start = para_start
                fresh = True

        if fresh:
            emit(buf, buf_start, len(normalized))
        return chunks

    def _overlap_tail(self, text: str) -> str:
        """Return the trailing text that seeds the next chunk.

        Prefers starting just after the last ``". "`` inside the trailing
        overlap window, then at the first word boundary inside it, then a
        hard cut.
        """
        if len(text) <= self.overlap:
            return text
        window_start = len(text) - self.overlap
        sentence = text.rfind(". ", window_start)
        if sentence > window_start:
            return text[sentence + 2 :]
        word = text.find(" ", window_start)
        if word != -1:
            return text[word + 1 :]
        return text[window_start:]

    def _split_long(self, text: str) -> Iterator[tuple[str, int, int]]:
        """Yield ``(piece, start, end)`` windows over a paragraph longer than a chunk."""
        size, overlap = self.chunk_size, self.overlap
        length = len(text)
        start = 0
        while start < length:
            end = min(start + size, length)
            if end < length:
                sentence = text.rfind(". ", start, end + 1)
                if sentence > start + size / 2:
                    end = sentence + 1
                else:
                    word = text.rfind(" ", start, end + 1)
                    if word > start + size / 2:
                        end = word
            yield text[start:end], start, end
            if end >= length:
                break
            next_start = end - overlap
            start = next_start if next_start > start else end


def _paragraphs(text: str, separator: str) -> Iterator[tuple[int, str]]:
    """Yield ``(offset, paragraph)`` for each non-blank paragraph of *text*."""
    pos = 0
    for part in text.split(separator):
        if part.strip():
            yield pos, part
        pos += len(part) + len(separator)


def split_text(
    text: str, chunk_size: int = 1000, overlap: int = 200, separator: str = "\n\n"
) -> list[TextChunk]:
    """Convenience wrapper: ``Chunker(chunk_size, overlap, separator).split(text)``."""
    return Chunker(chunk_size, overlap, separator).split(text)
