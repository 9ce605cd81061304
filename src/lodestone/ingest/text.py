"""Extractors for inline sources: free text and question/answer pairs."""

from __future__ import annotations

from lodestone.db.models import Source, SourceItem
from lodestone.errors import ExtractionError
from lodestone.ingest.base import ExtractedItem, Extractor


class TextExtractor(Extractor):
    """Return the text stored in the source config (``{"content": ...}``)."""

    def extract(self, source: Source, items: list[SourceItem]) -> list[ExtractedItem]:
        content = source.config_dict.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ExtractionError("No content to process")
        return [ExtractedItem(text=content)]


class QaExtractor(Extractor):
    """Render a Q&A pair as a single, unsplit item."""

    def extract(self, source: Source, items: list[SourceItem]) -> list[ExtractedItem]:
        cfg = source.config_dict
        question = str(cfg.get("question") or "").strip()
        answer = str(cfg.get("answer") or "").strip()
        if not question or not answer:
            raise ExtractionError("Q&A source needs both a question and an answer")
        return [
            ExtractedItem(
                text=f"Question: {question}\n\nAnswer: {answer}",
                metadata={"question": question, "answer": answer},
                chunkable=False,
            )
        ]
