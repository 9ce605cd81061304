"""Tests for schema initialization."""

from __future__ import annotations

from lodestone.db.connection import Database
from lodestone.db.schema import CURRENT_VERSION, initialize, schema_version


def test_fresh_database_reports_version_zero_after_bootstrap(tmp_path):
    with Database(tmp_path / "kb.db").session() as conn:
        conn.execute(
            "CREATE TABLE schema_version (version INTEGER NOT NULL, applied_at DATETIME)"
        )
        assert schema_version(conn) == 0


def test_initialize_applies_current_version(tmp_path):
    with Database(tmp_path / "kb.db").session() as conn:
        initialize(conn)
        assert schema_version(conn) == CURRENT_VERSION


def test_initialize_is_idempotent_across_connections(tmp_path):
    db = Database(tmp_path / "kb.db")
    with db.session() as conn:
        initialize(conn)
    with db.session() as conn:
        initialize(conn)
        count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == CURRENT_VERSION
