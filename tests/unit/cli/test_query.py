"""Tests for lodestone query."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from lodestone.cli.main import app
from lodestone.rag.vector_index import ChunkRecord, VectorIndex

runner = CliRunner()


@pytest.fixture
def indexed(cli_project, tmp_db, add_source, embedder):
    source = add_source(name="Handbook")
    texts = ["alpha guide", "beta manual"]
    VectorIndex(tmp_db, embedder.dimensions, embedder.model).replace_source_chunks(
        source.id,
        [
            ChunkRecord(t, embedder.embed(t), chunk_index=i, id=f"c{i}", metadata={"source_name": "Handbook"})
            for i, t in enumerate(texts)
        ],
    )
    return source


def test_query_json_returns_ranked_results(indexed) -> None:
    result = runner.invoke(app, ["query", "alpha", "--project", "proj-1", "--json"])
    assert result.exit_code == 0, result.output
    rows = json.loads(result.output)
    assert rows[0]["id"] == "c0"
    assert rows[0]["content"] == "alpha guide"
    assert rows[0]["source_id"] == indexed.id
    assert rows[0]["similarity"] > 0.9
    assert set(rows[0]) == {"id", "content", "metadata", "similarity", "source_id"}


def test_query_below_threshold_prints_notice(indexed) -> None:
    result = runner.invoke(app, ["query", "gamma", "-p", "proj-1"])
    assert result.exit_code == 0
    assert "No chunks above the similarity threshold" in result.output


def test_query_top_k_limits_results(indexed) -> None:
    result = runner.invoke(app, ["query", "alpha beta", "-p", "proj-1", "-k", "1", "--json"])
    assert len(json.loads(result.output)) == 1


def test_query_panels_show_content(indexed) -> None:
    result = runner.invoke(app, ["query", "beta", "-p", "proj-1"])
    assert result.exit_code == 0, result.output
    assert "beta manual" in result.output


def test_query_empty_text_is_invalid(indexed) -> None:
    result = runner.invoke(app, ["query", "   ", "-p", "proj-1"])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_query_unknown_project(indexed) -> None:
    result = runner.invoke(app, ["query", "alpha", "-p", "nope"])
    assert result.exit_code == 1
    assert "not found" in result.output
