"""Source processor — drives one source through extract → chunk → embed → index.

Lifecycle: ``pending → processing → completed | failed``. A run starts only
by atomically claiming a pending source, so a source never has two runs at
once. Chunks are written after every embedding batch has succeeded, in the
same transaction that removes the source's previous chunks; a failed run
leaves no chunks from that attempt behind.

Every failure inside a claimed run ends as ``failed`` with a message. No
exception escapes ``process_source()``.

``recrawl_link()`` refreshes a single sitemap link of a website source: only
chunks tagged with that link are replaced, and failures land on the link
row while the source keeps its status.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from lodestone.config import LodestoneConfig
from lodestone.db.connection import Database
from lodestone.db.models import Source, SourceItem, SourceStatus, SourceType, utcnow
from lodestone.db.repository import Repository
from lodestone.errors import ExtractionError, LodestoneError
from lodestone.ingest import default_extractors
from lodestone.ingest.base import ExtractedItem, Extractor
from lodestone.ingest.chunker import Chunker, TextChunk, estimate_tokens
from lodestone.ingest.embeddings import EmbeddingGenerator
from lodestone.ingest.web import WebsiteExtractor
from lodestone.rag.vector_index import ChunkRecord, VectorIndex

logger = logging.getLogger(__name__)

ALREADY_PROCESSING = "Source is already being processed"
LINK_ALREADY_PROCESSING = "Link is already being recrawled"
NOT_RECRAWLABLE = "Only website sitemap links can be recrawled"


@dataclass
class ProcessingResult:
    """Outcome of one processing request.

    ``skipped`` results never touched the source; ``conflict`` marks the
    skips caused by a run already in progress.
    """

    success: bool
    chunks_created: int = 0
    total_tokens: int = 0
    error: str | None = None
    skipped: bool = False
    conflict: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "chunks_created": self.chunks_created,
            "total_tokens": self.total_tokens,
            "error": self.error,
            "skipped": self.skipped,
        }


@dataclass
class _Pending:
    """A chunk cut from an extracted item, waiting for its vector."""

    item: ExtractedItem
    piece: TextChunk


class SourceProcessor:
    """Run the ingestion pipeline for individual sources.

    Each call opens its own database connection, so one processor can be
    shared by worker threads.

    Args:
        db: Connection factory for the knowledge base.
        embedder: Embedding generator (its model is recorded on every chunk).
        config: Chunking, crawl and processing settings.
        extractors: Per-type content collaborators; defaults to the built-ins.
    """

    def __init__(
        self,
        db: Database,
        embedder: EmbeddingGenerator,
        config: LodestoneConfig | None = None,
        extractors: dict[SourceType, Extractor] | None = None,
    ) -> None:
        self.db = db
        self.config = config or LodestoneConfig()
        self._embedder = embedder
        self._extractors = extractors if extractors is not None else default_extractors(
            self.config.crawl
        )
        ch = self.config.chunking
        self._chunker = Chunker(ch.chunk_size, ch.overlap, ch.separator)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_source(
        self, source_id: str, options: dict[str, object] | None = None
    ) -> ProcessingResult:
        """Claim a pending source and run the pipeline once.

        Args:
            source_id: Source to process.
            options: Per-run overrides of the source's type-specific config
                (for example ``{"max_pages": 5}`` for a crawl).
        """
        with self.db.session() as conn:
            repo = Repository(conn)
            source = repo.get_source(source_id)
            if source is None:
                return ProcessingResult(success=False, error="Source not found")

            if not repo.claim_source(source_id):
                current = repo.get_source(source_id)
                status = current.status if current else None
                if status == SourceStatus.PROCESSING:
                    logger.info("Source already processing", extra={"source_id": source_id})
                    return ProcessingResult(
                        success=False, error=ALREADY_PROCESSING, skipped=True, conflict=True
                    )
                state = status.value if status else "missing"
                return ProcessingResult(
                    success=False,
                    error=f"Source is {state}; retrain it to process again",
                    skipped=True,
                )

            logger.info(
                "Source processing started",
                extra={"source_id": source_id, "project_id": source.project_id},
            )
            if options:
                source = replace(source, config=json.dumps({**source.config_dict, **options}))
            try:
                return self._run(conn, repo, source)
            except Exception as exc:
                return self._fail(repo, source, exc)

    def retrain_source(
        self, source_id: str, options: dict[str, object] | None = None
    ) -> ProcessingResult:
        """Delete the source's chunks, reset it to pending and process it again."""
        with self.db.session() as conn:
            repo = Repository(conn)
            if repo.get_source(source_id) is None:
                return ProcessingResult(success=False, error="Source not found")
            if not repo.reset_source(source_id):
                logger.info("Retrain refused: source processing", extra={"source_id": source_id})
                return ProcessingResult(
                    success=False, error=ALREADY_PROCESSING, skipped=True, conflict=True
                )
        logger.info("Source reset for retrain", extra={"source_id": source_id})
        return self.process_source(source_id, options)

    def recrawl_link(self, source_id: str, link_id: str) -> ProcessingResult:
        """Re-fetch one sitemap link and swap only that link's chunks.

        The source keeps its status. The link moves ``processing`` then
        ``completed`` or ``failed``, and the source's counters are recomputed
        from the chunks that remain.
        """
        with self.db.session() as conn:
            repo = Repository(conn)
            source = repo.get_source(source_id)
            if source is None:
                return ProcessingResult(success=False, error="Source not found")
            link = repo.get_item(link_id)
            if link is None or link.source_id != source_id:
                return ProcessingResult(success=False, error="Link not found")
            extractor = self._extractors.get(source.type)
            if not isinstance(extractor, WebsiteExtractor):
                return ProcessingResult(success=False, error=NOT_RECRAWLABLE, skipped=True)
            if source.status == SourceStatus.PROCESSING:
                return ProcessingResult(
                    success=False, error=ALREADY_PROCESSING, skipped=True, conflict=True
                )
            if not repo.mark_item_processing(link_id):
                return ProcessingResult(
                    success=False, error=LINK_ALREADY_PROCESSING, skipped=True, conflict=True
                )

            logger.info("Link recrawl started", extra={"source_id": source_id, "link_id": link_id})
            try:
                return self._recrawl(conn, repo, source, extractor, link)
            except Exception as exc:
                return self._fail_link(repo, link, exc)

    def recover_stalled(self, older_than: datetime | None = None) -> list[str]:
        """Requeue sources left in ``processing`` by a run that never finished.

        Args:
            older_than: Cutoff for the last status change. Defaults to now
                minus ``processing.stall_minutes``.
        """
        cutoff = older_than or utcnow() - timedelta(minutes=self.config.processing.stall_minutes)
        with self.db.session() as conn:
            ids = Repository(conn).recover_stalled(cutoff)
        for source_id in ids:
            logger.warning("Requeued stalled source", extra={"source_id": source_id})
        return ids

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, conn: sqlite3.Connection, repo: Repository, source: Source) -> ProcessingResult:
        extractor = self._extractors.get(source.type)
        if extractor is None:
            raise ExtractionError(f"Unsupported source type: {source.type.value}")

        extracted = extractor.extract(source, repo.list_items(source.id))
        pending, completed_items, item_errors = self._cut(repo, extracted)
        if not pending:
            detail = f" ({item_errors[0]})" if item_errors else ""
            raise ExtractionError(f"No chunks created from source content{detail}")

        vectors = self._embedder.embed_batch([p.piece.content for p in pending])
        records, total_tokens = self._records(source, pending, vectors)

        index = VectorIndex(conn, self._embedder.dimensions, self._embedder.model)
        written = index.replace_source_chunks(source.id, records)

        for item in completed_items:
            if item.item_id:
                repo.mark_item_completed(item.item_id, item.title, len(item.text))

        retrained_at = utcnow() if source.auto_retrain and source.recrawlable else None
        repo.complete_source(source.id, written, total_tokens, retrained_at)
        logger.info(
            "Source processing completed",
            extra={"source_id": source.id, "chunks": written, "tokens": total_tokens},
        )
        return ProcessingResult(success=True, chunks_created=written, total_tokens=total_tokens)

    def _recrawl(
        self,
        conn: sqlite3.Connection,
        repo: Repository,
        source: Source,
        extractor: WebsiteExtractor,
        link: SourceItem,
    ) -> ProcessingResult:
        item = extractor.extract_link(link)
        pending, _, errors = self._cut(repo, [item])
        if not pending:
            # _cut() has already marked the link failed.
            logger.warning(
                "Link recrawl failed",
                extra={"source_id": source.id, "link_id": link.id, "error": errors[0]},
            )
            return ProcessingResult(success=False, error=errors[0])

        vectors = self._embedder.embed_batch([p.piece.content for p in pending])
        others = [
            c.chunk_index
            for c in repo.list_chunks_by_source(source.id)
            if c.metadata_dict.get("link_id") != link.id
        ]
        records, total_tokens = self._records(
            source, pending, vectors, first_index=max(others, default=-1) + 1
        )

        index = VectorIndex(conn, self._embedder.dimensions, self._embedder.model)
        written = index.replace_link_chunks(source.id, link.id, records)
        repo.mark_item_completed(link.id, item.title, len(item.text))
        repo.refresh_source_totals(source.id)
        logger.info(
            "Link recrawl completed",
            extra={"source_id": source.id, "link_id": link.id, "chunks": written},
        )
        return ProcessingResult(success=True, chunks_created=written, total_tokens=total_tokens)

    def _records(
        self,
        source: Source,
        pending: list[_Pending],
        vectors: list[list[float]],
        first_index: int = 0,
    ) -> tuple[list[ChunkRecord], int]:
        records: list[ChunkRecord] = []
        total_tokens = 0
        for position, (entry, vector) in enumerate(zip(pending, vectors), start=first_index):
            tokens = estimate_tokens(entry.piece.content)
            total_tokens += tokens
            metadata: dict[str, object] = {
                "source_name": source.name,
                "source_type": source.type.value,
                "chunk_index": entry.piece.chunk_index,
                "start_char": entry.piece.start_char,
                "end_char": entry.piece.end_char,
                **entry.item.metadata,
            }
            records.append(
                ChunkRecord(
                    content=entry.piece.content,
                    vector=vector,
                    chunk_index=position,
                    tokens_count=tokens,
                    metadata=metadata,
                )
            )
        return records, total_tokens

    def _cut(
        self, repo: Repository, extracted: list[ExtractedItem]
    ) -> tuple[list[_Pending], list[ExtractedItem], list[str]]:
        """Chunk every usable item; record per-item failures on their rows."""
        pending: list[_Pending] = []
        completed: list[ExtractedItem] = []
        errors: list[str] = []
        for item in extracted:
            error = item.error
            pieces: list[TextChunk] = []
            if error is None:
                pieces = self._split(item)
                if not pieces:
                    error = "No chunks created"
            if error is not None:
                errors.append(error)
                if item.item_id:
                    repo.mark_item_failed(item.item_id, error)
                continue
            pending.extend(_Pending(item, piece) for piece in pieces)
            completed.append(item)
        return pending, completed, errors

    def _split(self, item: ExtractedItem) -> list[TextChunk]:
        if item.chunkable:
            return self._chunker.split(item.text)
        text = item.text.strip()
        return [TextChunk(text, 0, 0, len(text))] if text else []

    def _fail(self, repo: Repository, source: Source, exc: Exception) -> ProcessingResult:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, LodestoneError):
            logger.warning(
                "Source processing failed",
                extra={"source_id": source.id, "error": message},
            )
        else:
            logger.exception("Source processing failed", extra={"source_id": source.id})
        try:
            repo.fail_source(source.id, message)
        except sqlite3.Error:
            # Left in processing; recover_stalled() requeues it later.
            logger.exception("Could not record failure", extra={"source_id": source.id})
        return ProcessingResult(success=False, error=message)

    def _fail_link(self, repo: Repository, link: SourceItem, exc: Exception) -> ProcessingResult:
        message = str(exc) or exc.__class__.__name__
        extra = {"source_id": link.source_id, "link_id": link.id}
        if isinstance(exc, LodestoneError):
            logger.warning("Link recrawl failed", extra={**extra, "error": message})
        else:
            logger.exception("Link recrawl failed", extra=extra)
        try:
            repo.mark_item_failed(link.id, message)
        except sqlite3.Error:
            logger.exception("Could not record link failure", extra=extra)
        return ProcessingResult(success=False, error=message)
