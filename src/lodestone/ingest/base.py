"""Extractor interface shared by all source-type collaborators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from lodestone.db.models import Source, SourceItem


@dataclass
class ExtractedItem:
    """Text produced for one source or one of its sub-resources.

    Attributes:
        text: Extracted text; empty when ``error`` is set.
        metadata: Copied into every chunk cut from ``text``.
        item_id: ID of the originating ``source_items`` row, if any.
        title: Human-readable title of the sub-resource.
        error: Per-item failure message; the item contributes no chunks.
        chunkable: False when ``text`` must be indexed as a single chunk.
    """

    text: str
    metadata: dict[str, object] = field(default_factory=dict)
    item_id: str | None = None
    title: str | None = None
    error: str | None = None
    chunkable: bool = True


class Extractor(ABC):
    """Abstract base for content collaborators.

    ``extract()`` raises ``ExtractionError`` when the source as a whole cannot
    be read. A failing sub-resource is reported as an ``ExtractedItem`` with
    ``error`` set so the remaining items can still be indexed.
    """

    @abstractmethod
    def extract(self, source: Source, items: list[SourceItem]) -> list[ExtractedItem]:
        """Return the extracted items for *source*.

        Args:
            source: The source being processed.
            items: Its non-excluded ``source_items`` rows (may be empty).
        """


def format_page(title: str, origin: str, body: str) -> str:
    """Render a fetched page the way it is indexed: title, origin line, body."""
    return f"# {title}\nSource: {origin}\n\n{body}"
