"""Chunk vector storage and cosine-similarity search over the ``chunks`` table.

Vectors are float32 blobs compared with sqlite-vec's ``vec_distance_cosine()``;
similarity is ``1 - distance``. Queries are exact scans filtered by project.

A chunk's ``project_id`` is always copied from its owning source inside the
insert statement; callers cannot set it independently.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from lodestone.db.models import to_timestamp, utcnow
from lodestone.db.vectors import encode_vector

_INSERT_SQL = """
INSERT OR REPLACE INTO chunks
    (id, source_id, project_id, chunk_index, content, metadata,
     tokens_count, embedding, embedding_model, created_at)
SELECT ?, s.id, s.project_id, ?, ?, ?, ?, ?, ?, ?
FROM sources s
WHERE s.id = ? AND (? IS NULL OR s.project_id = ?)
"""

_QUERY_SQL = """
SELECT id, content, metadata, source_id, similarity FROM (
    SELECT id, content, metadata, source_id,
           1 - vec_distance_cosine(embedding, ?) AS similarity
    FROM chunks
    WHERE project_id = ? AND embedding IS NOT NULL
)
WHERE similarity > ?
ORDER BY similarity DESC, id ASC
LIMIT ?
"""


@dataclass
class ChunkRecord:
    """A chunk ready to be written: text, metadata and its embedding."""

    content: str
    vector: Sequence[float]
    chunk_index: int = 0
    tokens_count: int = 0
    metadata: dict[str, object] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class SimilarityResult:
    chunk_id: str
    content: str
    metadata: dict
    similarity: float
    source_id: str


class VectorIndex:
    """Write and search chunk vectors for one embedding model.

    Args:
        conn: Open connection with sqlite-vec loaded.
        dimensions: Required width of every stored and queried vector.
        model: Embedding model identifier recorded with each chunk.
    """

    def __init__(self, conn: sqlite3.Connection, dimensions: int, model: str) -> None:
        self._conn = conn
        self.dimensions = dimensions
        self.model = model

    def upsert(
        self,
        chunk_id: str,
        source_id: str,
        content: str,
        vector: Sequence[float],
        *,
        project_id: str | None = None,
        metadata: dict[str, object] | None = None,
        tokens_count: int = 0,
        chunk_index: int = 0,
    ) -> None:
        """Write one chunk, replacing any existing chunk with the same ID.

        Raises:
            ValueError: If the vector width is wrong, the source does not
                exist, or *project_id* is given and differs from the source's.
        """
        record = ChunkRecord(
            id=chunk_id,
            content=content,
            vector=vector,
            chunk_index=chunk_index,
            tokens_count=tokens_count,
            metadata=metadata or {},
        )
        with self._conn:
            self._insert(source_id, record, project_id)

    def replace_source_chunks(self, source_id: str, records: Sequence[ChunkRecord]) -> int:
        """Atomically swap all chunks of *source_id* for *records*.

        Either every record is written and the old chunks are gone, or
        nothing changes.

        Returns:
            Number of chunks written.
        """
        # Encode first so a bad vector fails before the transaction starts.
        for record in records:
            encode_vector(record.vector, self.dimensions)
        with self._conn:
            self._conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
            for record in records:
                self._insert(source_id, record, None)
        return len(records)

    def replace_link_chunks(
        self, source_id: str, link_id: str, records: Sequence[ChunkRecord]
    ) -> int:
        """Atomically swap the chunks of one sitemap link within *source_id*.

        Chunks are matched on their ``link_id`` metadata; the source's other
        chunks are left alone.
        """
        for record in records:
            encode_vector(record.vector, self.dimensions)
        with self._conn:
            self._conn.execute(
                "DELETE FROM chunks WHERE source_id = ? AND json_extract(metadata, '$.link_id') = ?",
                (source_id, link_id),
            )
            for record in records:
                self._insert(source_id, record, None)
        return len(records)

    def delete_by_source(self, source_id: str) -> int:
        """Delete every chunk of *source_id*; returns the number removed."""
        with self._conn:
            cur = self._conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
        return cur.rowcount

    def query(
        self,
        project_id: str,
        vector: Sequence[float],
        threshold: float,
        top_k: int,
    ) -> list[SimilarityResult]:
        """Return the project's chunks with similarity strictly above *threshold*.

        Results are ordered by similarity (descending), ties by chunk ID.
        """
        if top_k < 1:
            return []
        blob = encode_vector(vector, self.dimensions)
        rows = self._conn.execute(
            _QUERY_SQL, (blob, project_id, threshold, top_k)
        ).fetchall()
        return [
            SimilarityResult(
                chunk_id=row["id"],
                content=row["content"],
                metadata=json.loads(row["metadata"]),
                similarity=float(row["similarity"]),
                source_id=row["source_id"],
            )
            for row in rows
        ]

    def _insert(self, source_id: str, record: ChunkRecord, project_id: str | None) -> None:
        cur = self._conn.execute(
            _INSERT_SQL,
            (
                record.id,
                record.chunk_index,
                record.content,
                json.dumps(record.metadata),
                record.tokens_count,
                encode_vector(record.vector, self.dimensions),
                self.model,
                to_timestamp(utcnow()),
                source_id,
                project_id,
                project_id,
            ),
        )
        if cur.rowcount != 1:
            raise ValueError(
                f"Cannot write chunk for source '{source_id}': source not found"
                + (f" in project '{project_id}'" if project_id else "")
            )
