"""Shared pytest fixtures."""

from __future__ import annotations

import json
import logging
import uuid
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from lodestone.config import EmbeddingCfg, LodestoneConfig
from lodestone.db.connection import Database
from lodestone.db.models import Organization, Project, Source, SourceType
from lodestone.db.repository import Repository
from lodestone.db.schema import initialize
from lodestone.ingest.embeddings import EmbeddingGenerator

TEST_MODEL = "test/embedding-3d"
TEST_DIMS = 3


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Undo setup_logging() calls made by CLI commands under test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def keyword_vector(text: str) -> list[float]:
    """Deterministic 3-d embedding: one axis per keyword, plus a constant axis."""
    lower = text.lower()
    return [
        1.0 if "alpha" in lower else 0.0,
        1.0 if "beta" in lower else 0.0,
        0.1,
    ]


def fake_embedding_response(model, input, **kwargs):
    return SimpleNamespace(
        data=[{"index": i, "embedding": keyword_vector(t)} for i, t in enumerate(input)]
    )


@pytest.fixture
def db_file(tmp_path):
    """Path to a file-based DB in tmp_path with schema initialized."""
    path = tmp_path / ".lodestone.db"
    with Database(path).session() as conn:
        initialize(conn)
    return path


@pytest.fixture
def database(db_file):
    return Database(db_file)


@pytest.fixture
def tmp_db(database):
    """Open connection to the initialized test DB, closed after test."""
    conn = database.connect()
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def tenant(repo):
    """Seed an organization on the pro plan with one active project."""
    org = Organization(id="org-1", name="Acme", plan="pro")
    project = Project(id="proj-1", organization_id=org.id, name="Docs")
    repo.add_organization(org)
    repo.add_project(project)
    return org, project


@pytest.fixture
def test_config():
    cfg = LodestoneConfig()
    cfg.embedding = EmbeddingCfg(model=TEST_MODEL, dimensions=TEST_DIMS)
    return cfg


@pytest.fixture
def mock_embedding():
    """Patch litellm.embedding with the deterministic keyword embedder."""
    with patch(
        "lodestone.ingest.embeddings.litellm.embedding", side_effect=fake_embedding_response
    ) as mocked:
        yield mocked


@pytest.fixture
def embedder(test_config, mock_embedding):
    return EmbeddingGenerator(test_config.embedding)


@pytest.fixture
def add_source(repo, tenant):
    """Factory: insert a source into the seeded project and return it."""

    def _add(
        kind: SourceType = SourceType.TEXT,
        config: dict | None = None,
        name: str = "Source",
        **fields,
    ) -> Source:
        source = Source(
            id=fields.pop("id", str(uuid.uuid4())),
            project_id=fields.pop("project_id", tenant[1].id),
            type=kind,
            name=name,
            config=json.dumps(config if config is not None else {"content": "alpha text"}),
            **fields,
        )
        repo.add_source(source)
        return source

    return _add


@pytest.fixture
def cli_project(tmp_path, monkeypatch, db_file):
    """Run CLI commands from tmp_path against db_file with the 3-d test model."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("lodestone.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    monkeypatch.delenv("LODESTONE_DB", raising=False)
    monkeypatch.delenv("LODESTONE_EMBEDDING_MODEL", raising=False)
    (tmp_path / "lodestone.yaml").write_text(
        f"embedding:\n  model: {TEST_MODEL}\n  dimensions: {TEST_DIMS}\n", encoding="utf-8"
    )
    return db_file
