"""Repository pattern for lodestone's relational records.

Single interface for organizations, projects, sources (including the status
compare-and-swap used to claim a source), source items and API keys.
Chunk vectors are written and searched through ``lodestone.rag.vector_index``.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

from lodestone.db.models import (
    RECRAWLABLE_TYPES,
    ApiKey,
    Chunk,
    Organization,
    Project,
    Source,
    SourceItem,
    SourceStatus,
    SourceType,
    to_timestamp,
    utcnow,
)

_SOURCE_COLUMNS = (
    "id, project_id, type, name, status, error_message, config, chunks_count, "
    "tokens_count, auto_retrain, last_retrained_at, created_at, updated_at"
)


class Repository:
    """Data access layer for lodestone database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller and
    must be closed after use; a connection must not be shared across threads.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with schema initialised
                (see lodestone.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Organizations + projects
    # ------------------------------------------------------------------

    def add_organization(self, org: Organization) -> None:
        self._conn.execute(
            """
            INSERT INTO organizations (id, name, plan, subscription_status, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                org.id,
                org.name,
                org.plan,
                org.subscription_status,
                org.created_at or to_timestamp(utcnow()),
            ),
        )
        self._conn.commit()

    def get_organization(self, org_id: str) -> Organization | None:
        row = self._conn.execute(
            "SELECT id, name, plan, subscription_status, created_at FROM organizations WHERE id = ?",
            (org_id,),
        ).fetchone()
        if row is None:
            return None
        return Organization(
            id=row["id"],
            name=row["name"],
            plan=row["plan"],
            subscription_status=row["subscription_status"],
            created_at=row["created_at"],
        )

    def add_project(self, project: Project) -> None:
        self._conn.execute(
            """
            INSERT INTO projects (id, organization_id, name, is_active, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                project.id,
                project.organization_id,
                project.name,
                int(project.is_active),
                project.created_at or to_timestamp(utcnow()),
            ),
        )
        self._conn.commit()

    def get_project(self, project_id: str) -> Project | None:
        row = self._conn.execute(
            "SELECT id, organization_id, name, is_active, created_at FROM projects WHERE id = ?",
            (project_id,),
        ).fetchone()
        return _row_to_project(row) if row else None

    def list_projects(self) -> list[Project]:
        rows = self._conn.execute(
            "SELECT id, organization_id, name, is_active, created_at FROM projects ORDER BY created_at"
        ).fetchall()
        return [_row_to_project(r) for r in rows]

    def set_project_active(self, project_id: str, active: bool) -> None:
        self._conn.execute(
            "UPDATE projects SET is_active = ? WHERE id = ?", (int(active), project_id)
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> None:
        """Insert a new source record (status defaults to pending)."""
        now = to_timestamp(utcnow())
        self._conn.execute(
            f"""
            INSERT INTO sources ({_SOURCE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source.id,
                source.project_id,
                SourceType(source.type).value,
                source.name,
                SourceStatus(source.status).value,
                source.error_message,
                source.config,
                source.chunks_count,
                source.tokens_count,
                int(source.auto_retrain),
                source.last_retrained_at,
                source.created_at or now,
                source.updated_at or now,
            ),
        )
        self._conn.commit()

    def get_source(self, source_id: str) -> Source | None:
        """Return a source by ID, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(
        self,
        project_id: str | None = None,
        status: SourceStatus | None = None,
        limit: int | None = None,
        *,
        source_type: SourceType | None = None,
        offset: int = 0,
        newest_first: bool = False,
    ) -> list[Source]:
        """Return sources, optionally filtered by project, status and type.

        Oldest first unless *newest_first*. *offset* skips that many rows
        after ordering.
        """
        clauses: list[str] = []
        params: list[object] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(SourceStatus(status).value)
        if source_type is not None:
            clauses.append("type = ?")
            params.append(SourceType(source_type).value)
        sql = f"SELECT {_SOURCE_COLUMNS} FROM sources"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC" if newest_first else " ORDER BY created_at, id"
        if limit is not None or offset:
            # SQLite needs a LIMIT before OFFSET; -1 means unbounded.
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, offset])
        return [_row_to_source(r) for r in self._conn.execute(sql, params).fetchall()]

    def count_sources_by_status(self) -> dict[str, int]:
        """Return ``{status: count}`` for every status (zero-filled)."""
        counts = {s.value: 0 for s in SourceStatus}
        for row in self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM sources GROUP BY status"
        ).fetchall():
            counts[row["status"]] = row["n"]
        return counts

    def delete_source(self, source_id: str) -> None:
        """Delete a source; its items and chunks cascade."""
        self._conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        self._conn.commit()

    def set_auto_retrain(self, source_id: str, enabled: bool) -> None:
        self._conn.execute(
            "UPDATE sources SET auto_retrain = ?, updated_at = ? WHERE id = ?",
            (int(enabled), to_timestamp(utcnow()), source_id),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Source lifecycle transitions
    # ------------------------------------------------------------------

    def claim_source(self, source_id: str) -> bool:
        """Atomically move a source from pending to processing.

        Returns:
            True if this caller won the claim, False if the source was not pending.
        """
        cur = self._conn.execute(
            """
            UPDATE sources
            SET status = 'processing', error_message = NULL, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (to_timestamp(utcnow()), source_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def reset_source(self, source_id: str) -> bool:
        """Delete a source's chunks, zero its counters and return it to pending.

        Refused (returns False) while the source is processing. The status
        change and the chunk deletion commit together.
        """
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE sources
                SET status = 'pending', error_message = NULL,
                    chunks_count = 0, tokens_count = 0, updated_at = ?
                WHERE id = ? AND status != 'processing'
                """,
                (to_timestamp(utcnow()), source_id),
            )
            if cur.rowcount != 1:
                return False
            self._conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
        return True

    def complete_source(
        self,
        source_id: str,
        chunks_count: int,
        tokens_count: int,
        retrained_at: datetime | None = None,
    ) -> None:
        """Mark a processing source completed with the totals actually written."""
        now = to_timestamp(utcnow())
        if retrained_at is None:
            self._conn.execute(
                """
                UPDATE sources
                SET status = 'completed', error_message = NULL,
                    chunks_count = ?, tokens_count = ?, updated_at = ?
                WHERE id = ?
                """,
                (chunks_count, tokens_count, now, source_id),
            )
        else:
            self._conn.execute(
                """
                UPDATE sources
                SET status = 'completed', error_message = NULL,
                    chunks_count = ?, tokens_count = ?, updated_at = ?,
                    last_retrained_at = ?
                WHERE id = ?
                """,
                (chunks_count, tokens_count, now, to_timestamp(retrained_at), source_id),
            )
        self._conn.commit()

    def refresh_source_totals(self, source_id: str) -> None:
        """Recompute a source's chunk and token counters from its stored chunks."""
        self._conn.execute(
            """
            UPDATE sources
            SET chunks_count = (SELECT COUNT(*) FROM chunks WHERE source_id = sources.id),
                tokens_count = (SELECT COALESCE(SUM(tokens_count), 0)
                                FROM chunks WHERE source_id = sources.id),
                updated_at = ?
            WHERE id = ?
            """,
            (to_timestamp(utcnow()), source_id),
        )
        self._conn.commit()

    def fail_source(self, source_id: str, message: str) -> None:
        """Mark a source failed; counters keep their pre-attempt values."""
        self._conn.execute(
            """
            UPDATE sources SET status = 'failed', error_message = ?, updated_at = ?
            WHERE id = ?
            """,
            (message, to_timestamp(utcnow()), source_id),
        )
        self._conn.commit()

    def recover_stalled(self, older_than: datetime) -> list[str]:
        """Return sources stuck in processing since before *older_than* to pending.

        Returns:
            IDs of the sources that were requeued.
        """
        cutoff = to_timestamp(older_than)
        with self._conn:
            ids = [
                r["id"]
                for r in self._conn.execute(
                    "SELECT id FROM sources WHERE status = 'processing' AND updated_at < ?",
                    (cutoff,),
                ).fetchall()
            ]
            if ids:
                placeholders = ",".join("?" * len(ids))
                self._conn.execute(
                    f"""
                    UPDATE sources
                    SET status = 'pending',
                        error_message = 'Requeued after stalled processing run',
                        updated_at = ?
                    WHERE status = 'processing' AND id IN ({placeholders})
                    """,
                    [to_timestamp(utcnow()), *ids],
                )
        return ids

    def list_retrain_candidates(
        self,
        cutoff: datetime,
        allowed_plans: list[str],
        limit: int,
    ) -> list[Source]:
        """Return completed auto-retrain sources due for a re-crawl.

        A source qualifies when its type can be re-fetched, its project is
        active, its organization has an active subscription on one of
        *allowed_plans*, and it was never retrained or last retrained before
        *cutoff*. Never-retrained sources come first, then the stalest.
        """
        if not allowed_plans:
            return []
        types = sorted(t.value for t in RECRAWLABLE_TYPES)
        plan_marks = ",".join("?" * len(allowed_plans))
        type_marks = ",".join("?" * len(types))
        cols = ", ".join(f"s.{c.strip()}" for c in _SOURCE_COLUMNS.split(","))
        rows = self._conn.execute(
            f"""
            SELECT {cols}
            FROM sources s
            JOIN projects p ON p.id = s.project_id
            JOIN organizations o ON o.id = p.organization_id
            WHERE s.auto_retrain = 1
              AND s.status = 'completed'
              AND s.type IN ({type_marks})
              AND p.is_active = 1
              AND o.subscription_status = 'active'
              AND o.plan IN ({plan_marks})
              AND (s.last_retrained_at IS NULL OR s.last_retrained_at < ?)
            ORDER BY COALESCE(s.last_retrained_at, ''), s.created_at, s.id
            LIMIT ?
            """,
            [*types, *allowed_plans, to_timestamp(cutoff), limit],
        ).fetchall()
        return [_row_to_source(r) for r in rows]

    # ------------------------------------------------------------------
    # Source items
    # ------------------------------------------------------------------

    def add_item(self, item: SourceItem) -> None:
        self._conn.execute(
            """
            INSERT INTO source_items (id, source_id, kind, address, title, status, is_excluded)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.source_id,
                item.kind,
                item.address,
                item.title,
                item.status,
                int(item.is_excluded),
            ),
        )
        self._conn.commit()

    def list_items(self, source_id: str, include_excluded: bool = False) -> list[SourceItem]:
        sql = (
            "SELECT id, source_id, kind, address, title, status, error_message, "
            "is_excluded, content_size, last_synced_at FROM source_items WHERE source_id = ?"
        )
        if not include_excluded:
            sql += " AND is_excluded = 0"
        sql += " ORDER BY rowid"
        return [_row_to_item(r) for r in self._conn.execute(sql, (source_id,)).fetchall()]

    def get_item(self, item_id: str) -> SourceItem | None:
        row = self._conn.execute(
            "SELECT id, source_id, kind, address, title, status, error_message, "
            "is_excluded, content_size, last_synced_at FROM source_items WHERE id = ?",
            (item_id,),
        ).fetchone()
        return _row_to_item(row) if row else None

    def mark_item_processing(self, item_id: str) -> bool:
        """Move an item to processing unless it already is.

        Returns:
            True if this caller made the transition.
        """
        cur = self._conn.execute(
            """
            UPDATE source_items SET status = 'processing', error_message = NULL
            WHERE id = ? AND status != 'processing'
            """,
            (item_id,),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def mark_item_completed(
        self, item_id: str, title: str | None, content_size: int
    ) -> None:
        self._conn.execute(
            """
            UPDATE source_items
            SET status = 'completed', error_message = NULL,
                title = COALESCE(?, title), content_size = ?, last_synced_at = ?
            WHERE id = ?
            """,
            (title, content_size, to_timestamp(utcnow()), item_id),
        )
        self._conn.commit()

    def mark_item_failed(self, item_id: str, message: str) -> None:
        self._conn.execute(
            "UPDATE source_items SET status = 'failed', error_message = ? WHERE id = ?",
            (message, item_id),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Chunks (read side)
    # ------------------------------------------------------------------

    def count_chunks_by_source(self, source_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE source_id = ?", (source_id,)
        ).fetchone()[0]

    def list_chunks_by_source(self, source_id: str) -> list[Chunk]:
        """Return a source's chunks ordered by index (vectors omitted)."""
        rows = self._conn.execute(
            """
            SELECT id, source_id, project_id, chunk_index, content, metadata,
                   tokens_count, embedding_model, created_at
            FROM chunks WHERE source_id = ? ORDER BY chunk_index, id
            """,
            (source_id,),
        ).fetchall()
        return [
            Chunk(
                id=r["id"],
                source_id=r["source_id"],
                project_id=r["project_id"],
                chunk_index=r["chunk_index"],
                content=r["content"],
                metadata=r["metadata"],
                tokens_count=r["tokens_count"],
                embedding_model=r["embedding_model"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def add_api_key(self, key: ApiKey) -> None:
        self._conn.execute(
            """
            INSERT INTO api_keys
                (id, project_id, name, key_hash, key_prefix, is_active, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                key.id,
                key.project_id,
                key.name,
                key.key_hash,
                key.key_prefix,
                int(key.is_active),
                key.expires_at,
                key.created_at or to_timestamp(utcnow()),
            ),
        )
        self._conn.commit()

    def find_active_api_key(
        self, key_hash: str, key_prefix: str
    ) -> tuple[ApiKey, Project] | None:
        """Return the active key matching ``(hash, prefix)`` with its project."""
        row = self._conn.execute(
            """
            SELECT k.id, k.project_id, k.name, k.key_hash, k.key_prefix, k.is_active,
                   k.expires_at, k.last_used_at, k.created_at,
                   p.organization_id, p.name AS project_name, p.is_active AS project_active,
                   p.created_at AS project_created_at
            FROM api_keys k JOIN projects p ON p.id = k.project_id
            WHERE k.key_hash = ? AND k.key_prefix = ? AND k.is_active = 1
            LIMIT 1
            """,
            (key_hash, key_prefix),
        ).fetchone()
        if row is None:
            return None
        project = Project(
            id=row["project_id"],
            organization_id=row["organization_id"],
            name=row["project_name"],
            is_active=bool(row["project_active"]),
            created_at=row["project_created_at"],
        )
        return _row_to_api_key(row), project

    def list_api_keys(self, project_id: str) -> list[ApiKey]:
        rows = self._conn.execute(
            """
            SELECT id, project_id, name, key_hash, key_prefix, is_active,
                   expires_at, last_used_at, created_at
            FROM api_keys WHERE project_id = ? ORDER BY created_at, id
            """,
            (project_id,),
        ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def touch_api_key(self, key_id: str, when: datetime | None = None) -> None:
        self._conn.execute(
            "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
            (to_timestamp(when or utcnow()), key_id),
        )
        self._conn.commit()

    def revoke_api_key(self, key_id: str) -> bool:
        cur = self._conn.execute(
            "UPDATE api_keys SET is_active = 0 WHERE id = ? AND is_active = 1", (key_id,)
        )
        self._conn.commit()
        return cur.rowcount == 1


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        project_id=row["project_id"],
        type=SourceType(row["type"]),
        name=row["name"],
        status=SourceStatus(row["status"]),
        error_message=row["error_message"],
        config=row["config"],
        chunks_count=row["chunks_count"],
        tokens_count=row["tokens_count"],
        auto_retrain=bool(row["auto_retrain"]),
        last_retrained_at=row["last_retrained_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_item(row: sqlite3.Row) -> SourceItem:
    return SourceItem(
        id=row["id"],
        source_id=row["source_id"],
        kind=row["kind"],
        address=row["address"],
        title=row["title"],
        status=row["status"],
        error_message=row["error_message"],
        is_excluded=bool(row["is_excluded"]),
        content_size=row["content_size"],
        last_synced_at=row["last_synced_at"],
    )


def _row_to_api_key(row: sqlite3.Row) -> ApiKey:
    return ApiKey(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        key_hash=row["key_hash"],
        key_prefix=row["key_prefix"],
        is_active=bool(row["is_active"]),
        expires_at=row["expires_at"],
        last_used_at=row["last_used_at"],
        created_at=row["created_at"],
    )
