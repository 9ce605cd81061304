"""Tests for lodestone sources (add-* and list)."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from lodestone.cli import sources
from lodestone.cli.main import app
from lodestone.db.models import SourceStatus, SourceType

runner = CliRunner()


@pytest.fixture(autouse=True)
def _wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sources.console, "width", 200)


@pytest.fixture
def cli(cli_project, tenant):
    """Invoke the CLI inside the seeded project directory."""

    def _invoke(*args: str, **kwargs):
        return runner.invoke(app, list(args), **kwargs)

    return _invoke


def _only_source(repo):
    [source] = repo.list_sources()
    return source


# ---------------------------------------------------------------------------
# add-text / add-qa
# ---------------------------------------------------------------------------


def test_add_text_registers_pending_source(cli, repo) -> None:
    result = cli("sources", "add-text", "-p", "proj-1", "-n", "Handbook", "-c", "alpha text")
    assert result.exit_code == 0, result.output
    assert "Added text source" in result.output

    source = _only_source(repo)
    assert source.type == SourceType.TEXT
    assert source.status == SourceStatus.PENDING
    assert source.config_dict == {"content": "alpha text"}


def test_add_text_from_file(cli, repo, tmp_path: Path) -> None:
    body = tmp_path / "notes.txt"
    body.write_text("beta notes", encoding="utf-8")
    result = cli("sources", "add-text", "-p", "proj-1", "-n", "Notes", "--from-file", str(body))
    assert result.exit_code == 0, result.output
    assert _only_source(repo).config_dict["content"] == "beta notes"


def test_add_text_empty_content_fails(cli, repo) -> None:
    result = cli("sources", "add-text", "-p", "proj-1", "-n", "Empty", "-c", "   ")
    assert result.exit_code == 1
    assert "Text content is empty" in result.output
    assert repo.list_sources() == []


def test_add_text_unknown_project_fails(cli, repo) -> None:
    result = cli("sources", "add-text", "-p", "nope", "-n", "X", "-c", "alpha")
    assert result.exit_code == 1
    assert "not found" in result.output
    assert repo.list_sources() == []


def test_add_text_without_database_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("lodestone.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    monkeypatch.delenv("LODESTONE_DB", raising=False)
    result = runner.invoke(app, ["sources", "add-text", "-p", "p", "-n", "X", "-c", "alpha"])
    assert result.exit_code == 1
    assert "lodestone init" in result.output


def test_add_qa_name_defaults_to_question(cli, repo) -> None:
    result = cli("sources", "add-qa", "-p", "proj-1", "-q", "What is alpha?", "-a", "A letter.")
    assert result.exit_code == 0, result.output
    source = _only_source(repo)
    assert source.type == SourceType.QA
    assert source.name == "What is alpha?"
    assert source.config_dict == {"question": "What is alpha?", "answer": "A letter."}


def test_add_qa_blank_answer_fails(cli) -> None:
    result = cli("sources", "add-qa", "-p", "proj-1", "-q", "Why?", "-a", " ")
    assert result.exit_code == 1


# ---------------------------------------------------------------------------
# add-website
# ---------------------------------------------------------------------------


def test_add_website_single(cli, repo) -> None:
    result = cli("sources", "add-website", "-p", "proj-1", "--url", "https://example.com/docs")
    assert result.exit_code == 0, result.output
    source = _only_source(repo)
    assert source.type == SourceType.WEBSITE
    assert source.name == "https://example.com/docs"
    assert source.config_dict == {"url": "https://example.com/docs", "crawl_type": "single"}
    assert source.auto_retrain is False


def test_add_website_crawl_options(cli, repo) -> None:
    result = cli(
        "sources", "add-website", "-p", "proj-1",
        "--url", "https://example.com",
        "--crawl-type", "crawl",
        "--max-depth", "1",
        "--max-pages", "5",
        "--include", "/docs/*",
        "--exclude", "/docs/old/*",
        "--auto-retrain",
    )
    assert result.exit_code == 0, result.output
    source = _only_source(repo)
    assert source.config_dict["max_depth"] == 1
    assert source.config_dict["max_pages"] == 5
    assert source.config_dict["include_paths"] == ["/docs/*"]
    assert source.config_dict["exclude_paths"] == ["/docs/old/*"]
    assert source.auto_retrain is True


def test_add_website_bad_crawl_type(cli, repo) -> None:
    result = cli("sources", "add-website", "-p", "proj-1", "--url", "https://e.com", "--crawl-type", "deep")
    assert result.exit_code == 1
    assert repo.list_sources() == []


def test_add_website_sitemap_registers_links(cli, repo) -> None:
    links = ["https://example.com/a", "https://example.com/b"]
    with patch("lodestone.cli.sources.fetch_sitemap_urls", return_value=(links, [])) as fetch:
        result = cli(
            "sources", "add-website", "-p", "proj-1",
            "--url", "https://example.com/",
            "--crawl-type", "sitemap",
        )
    assert result.exit_code == 0, result.output
    assert fetch.call_args.args[1] == "https://example.com/sitemap.xml"
    assert "2 item(s) registered" in result.output

    source = _only_source(repo)
    assert source.config_dict["sitemap_url"] == "https://example.com/sitemap.xml"
    items = repo.list_items(source.id)
    assert sorted(i.address for i in items) == links
    assert {i.kind for i in items} == {"link"}


def test_add_website_empty_sitemap_fails(cli, repo) -> None:
    errors = [("https://example.com/sitemap.xml", "HTTP 404")]
    with patch("lodestone.cli.sources.fetch_sitemap_urls", return_value=([], errors)):
        result = cli(
            "sources", "add-website", "-p", "proj-1",
            "--url", "https://example.com", "--crawl-type", "sitemap",
        )
    assert result.exit_code == 1
    assert "HTTP 404" in result.output
    assert repo.list_sources() == []


# ---------------------------------------------------------------------------
# add-document / add-workspace
# ---------------------------------------------------------------------------


def test_add_document_records_path_and_type(cli, repo, tmp_path: Path) -> None:
    doc = tmp_path / "guide.md"
    doc.write_text("# Guide\n\nalpha", encoding="utf-8")
    result = cli("sources", "add-document", "-p", "proj-1", "--path", str(doc))
    assert result.exit_code == 0, result.output
    source = _only_source(repo)
    assert source.name == "guide.md"
    assert source.config_dict == {"path": str(doc.resolve()), "file_type": "txt"}


def test_add_document_missing_file(cli, tmp_path: Path) -> None:
    result = cli("sources", "add-document", "-p", "proj-1", "--path", str(tmp_path / "gone.pdf"))
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_add_document_unsupported_type(cli, repo, tmp_path: Path) -> None:
    sheet = tmp_path / "data.xlsx"
    sheet.write_bytes(b"PK")
    result = cli("sources", "add-document", "-p", "proj-1", "--path", str(sheet))
    assert result.exit_code == 1
    assert "Unsupported file type" in result.output
    assert repo.list_sources() == []


def test_add_workspace_pages_and_databases(cli, repo) -> None:
    result = cli(
        "sources", "add-workspace", "-p", "proj-1", "-n", "Wiki",
        "--page", "page-1", "--page", "page-2", "--database", "db-1",
    )
    assert result.exit_code == 0, result.output
    source = _only_source(repo)
    assert source.config_dict == {"token_env": "NOTION_API_KEY"}
    kinds = sorted((i.kind, i.address) for i in repo.list_items(source.id))
    assert kinds == [("database", "db-1"), ("page", "page-1"), ("page", "page-2")]


def test_add_workspace_requires_a_selection(cli) -> None:
    result = cli("sources", "add-workspace", "-p", "proj-1", "-n", "Wiki")
    assert result.exit_code == 1
    assert "Select at least one" in result.output


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


def test_list_empty(cli) -> None:
    result = cli("sources", "list")
    assert result.exit_code == 0
    assert "No sources found" in result.output


def test_list_shows_sources(cli, add_source) -> None:
    add_source(name="Handbook")
    result = cli("sources", "list")
    assert result.exit_code == 0, result.output
    assert "Handbook" in result.output
    assert "pending" in result.output


def test_list_filters_by_status(cli, add_source) -> None:
    add_source(name="Handbook")
    add_source(name="Manual", status=SourceStatus.COMPLETED)
    result = cli("sources", "list", "--status", "completed")
    assert "Manual" in result.output
    assert "Handbook" not in result.output


def test_list_unknown_status_fails(cli) -> None:
    result = cli("sources", "list", "--status", "archived")
    assert result.exit_code == 1
    assert "Unknown status" in result.output
