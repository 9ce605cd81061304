"""Tests for the CLI's actionable error messages."""

from __future__ import annotations

import pytest

from lodestone.cli.errors import (
    err_already_processing,
    err_config,
    err_invalid_input,
    err_no_api_key,
    err_no_db,
    err_processing_failed,
    err_project_not_found,
    err_source_not_found,
)


def _has_action(msg: str) -> bool:
    """Every error names a cause and a next step."""
    lower = msg.lower()
    return any(kw in lower for kw in ("run:", "set:", "fix ", "--help", "wait "))


@pytest.mark.parametrize(
    "msg",
    [
        err_no_api_key("openai"),
        err_no_db(),
        err_config("forbidden key 'api_key'"),
        err_project_not_found("proj-1"),
        err_source_not_found("src-1"),
        err_invalid_input("--crawl-type must be one of single, crawl, sitemap."),
        err_processing_failed("src-1", "Embedding provider down"),
        err_already_processing("src-1"),
    ],
)
def test_every_error_is_actionable(msg: str) -> None:
    assert _has_action(msg)


def test_no_api_key_default_env_var() -> None:
    assert "export OPENAI_API_KEY=" in err_no_api_key("openai")


def test_no_api_key_explicit_env_var() -> None:
    assert "export GEMINI_API_KEY=" in err_no_api_key("gemini", "GEMINI_API_KEY")


def test_no_db_names_path() -> None:
    assert "/data/kb.db" in err_no_db("/data/kb.db")


def test_processing_failed_suggests_retrain_for_source() -> None:
    msg = err_processing_failed("src-1", "boom")
    assert "lodestone retrain --source src-1" in msg


def test_already_processing_points_at_recover() -> None:
    assert "lodestone recover" in err_already_processing("src-1")


def test_messages_escape_markup() -> None:
    msg = err_source_not_found("[bold]x[/bold]")
    assert "\\[bold]" in msg
