"""Lodestone ingest pipeline — chunker, embedding generator, content extractors."""

from __future__ import annotations

from lodestone.config import CrawlCfg
from lodestone.db.models import SourceType
from lodestone.ingest.base import ExtractedItem, Extractor
from lodestone.ingest.chunker import Chunker, TextChunk, estimate_tokens, split_text
from lodestone.ingest.document import DocumentExtractor
from lodestone.ingest.embeddings import EmbeddingGenerator
from lodestone.ingest.text import QaExtractor, TextExtractor
from lodestone.ingest.web import WebsiteExtractor
from lodestone.ingest.workspace import WorkspaceExtractor


def default_extractors(crawl: CrawlCfg | None = None) -> dict[SourceType, Extractor]:
    """Return one extractor per source type."""
    crawl = crawl or CrawlCfg()
    return {
        SourceType.TEXT: TextExtractor(),
        SourceType.QA: QaExtractor(),
        SourceType.WEBSITE: WebsiteExtractor(crawl),
        SourceType.DOCUMENT: DocumentExtractor(),
        SourceType.WORKSPACE: WorkspaceExtractor(timeout=crawl.timeout),
    }


__all__ = [
    "Chunker",
    "DocumentExtractor",
    "EmbeddingGenerator",
    "ExtractedItem",
    "Extractor",
    "QaExtractor",
    "TextChunk",
    "TextExtractor",
    "WebsiteExtractor",
    "WorkspaceExtractor",
    "default_extractors",
    "estimate_tokens",
    "split_text",
]
