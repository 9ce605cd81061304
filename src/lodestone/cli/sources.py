"""lodestone sources — register sources and list them.

  lodestone sources add-text      --project P --name N --content TEXT
  lodestone sources add-qa        --project P --question Q --answer A
  lodestone sources add-website   --project P --url URL [--crawl-type single|crawl|sitemap]
  lodestone sources add-document  --project P --path FILE
  lodestone sources add-workspace --project P --page ID --database ID
  lodestone sources list          [--project P] [--status S]

New sources start ``pending``; run ``lodestone process`` to ingest them.
"""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lodestone.cli.common import cli_config, require_project, resolve_db
from lodestone.cli.errors import err_invalid_input
from lodestone.db.connection import Database
from lodestone.db.models import Source, SourceItem, SourceStatus, SourceType
from lodestone.db.repository import Repository
from lodestone.errors import ExtractionError
from lodestone.ingest.document import detect_file_type
from lodestone.ingest.web import WebFetcher, fetch_sitemap_urls

console = Console()

sources_app = typer.Typer(help="Register and list knowledge base sources.", no_args_is_help=True)

_CRAWL_TYPES = ("single", "crawl", "sitemap")

ProjectOpt = Annotated[str, typer.Option("--project", "-p", help="Owning project ID.")]
DbOpt = Annotated[Optional[Path], typer.Option("--db", help="Path to .lodestone.db.")]


def _register(
    database: Database,
    project_id: str,
    kind: SourceType,
    name: str,
    config: dict,
    *,
    auto_retrain: bool = False,
    items: list[tuple[str, str]] | None = None,
) -> Source:
    """Insert a pending source (and its sub-resources) and print its ID."""
    with database.session() as conn:
        require_project(conn, project_id)
        source = Source(
            id=str(uuid.uuid4()),
            project_id=project_id,
            type=kind,
            name=name,
            config=json.dumps(config),
            auto_retrain=auto_retrain,
        )
        repo = Repository(conn)
        repo.add_source(source)
        for item_kind, address in items or []:
            repo.add_item(
                SourceItem(
                    id=str(uuid.uuid4()),
                    source_id=source.id,
                    kind=item_kind,
                    address=address,
                )
            )
    console.print(f"[green]✓[/] Added {kind.value} source [bold]{escape(name)}[/]: {source.id}")
    if items:
        console.print(f"  {len(items)} item(s) registered")
    return source


@sources_app.command("add-text")
def add_text_cmd(
    project: ProjectOpt,
    name: Annotated[str, typer.Option("--name", "-n", help="Display name.")],
    content: Annotated[
        Optional[str], typer.Option("--content", "-c", help="Text body.")
    ] = None,
    from_file: Annotated[
        Optional[Path], typer.Option("--from-file", help="Read the text body from a file.")
    ] = None,
    db: DbOpt = None,
) -> None:
    """Add a plain-text source."""
    if from_file is not None:
        content = from_file.read_text(encoding="utf-8")
    if not content or not content.strip():
        console.print(err_invalid_input("Text content is empty. Use --content or --from-file."))
        raise typer.Exit(1)
    cfg = cli_config()
    _register(resolve_db(db, cfg), project, SourceType.TEXT, name, {"content": content})


@sources_app.command("add-qa")
def add_qa_cmd(
    project: ProjectOpt,
    question: Annotated[str, typer.Option("--question", "-q", help="Question text.")],
    answer: Annotated[str, typer.Option("--answer", "-a", help="Answer text.")],
    name: Annotated[
        Optional[str], typer.Option("--name", "-n", help="Display name (defaults to question).")
    ] = None,
    db: DbOpt = None,
) -> None:
    """Add a question/answer pair, stored as a single unsplit chunk."""
    if not question.strip() or not answer.strip():
        console.print(err_invalid_input("Both --question and --answer are required."))
        raise typer.Exit(1)
    cfg = cli_config()
    _register(
        resolve_db(db, cfg),
        project,
        SourceType.QA,
        name or question[:80],
        {"question": question, "answer": answer},
    )


@sources_app.command("add-website")
def add_website_cmd(
    project: ProjectOpt,
    url: Annotated[str, typer.Option("--url", "-u", help="Start page or site URL.")],
    crawl_type: Annotated[
        str, typer.Option("--crawl-type", help="single, crawl or sitemap.")
    ] = "single",
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="Display name.")] = None,
    sitemap: Annotated[
        Optional[str],
        typer.Option("--sitemap", help="Sitemap URL (defaults to <url>/sitemap.xml)."),
    ] = None,
    max_depth: Annotated[
        Optional[int], typer.Option("--max-depth", help="Crawl depth (crawl mode).")
    ] = None,
    max_pages: Annotated[
        Optional[int], typer.Option("--max-pages", help="Page budget (crawl and sitemap).")
    ] = None,
    include: Annotated[
        Optional[list[str]], typer.Option("--include", help="Path glob to keep (repeatable).")
    ] = None,
    exclude: Annotated[
        Optional[list[str]], typer.Option("--exclude", help="Path glob to drop (repeatable).")
    ] = None,
    auto_retrain: Annotated[
        bool, typer.Option("--auto-retrain", help="Re-crawl on the retrain schedule.")
    ] = False,
    db: DbOpt = None,
) -> None:
    """Add a website source (single page, same-domain crawl, or sitemap links)."""
    if crawl_type not in _CRAWL_TYPES:
        console.print(err_invalid_input(f"--crawl-type must be one of {', '.join(_CRAWL_TYPES)}."))
        raise typer.Exit(1)
    cfg = cli_config()
    database = resolve_db(db, cfg)

    config: dict[str, object] = {"url": url, "crawl_type": crawl_type}
    if max_depth is not None:
        config["max_depth"] = max_depth
    if max_pages is not None:
        config["max_pages"] = max_pages
    if include:
        config["include_paths"] = include
    if exclude:
        config["exclude_paths"] = exclude

    items: list[tuple[str, str]] = []
    if crawl_type == "sitemap":
        sitemap_url = sitemap or url.rstrip("/") + "/sitemap.xml"
        config["sitemap_url"] = sitemap_url
        links, errors = fetch_sitemap_urls(
            WebFetcher(cfg.crawl), sitemap_url, include, exclude, max_pages
        )
        for failed_url, message in errors:
            console.print(f"  [yellow]⚠[/] {escape(failed_url)}: {escape(message)}")
        if not links:
            console.print(err_invalid_input(f"No links found in sitemap {sitemap_url}"))
            raise typer.Exit(1)
        items = [("link", link) for link in links]

    _register(
        database,
        project,
        SourceType.WEBSITE,
        name or url,
        config,
        auto_retrain=auto_retrain,
        items=items,
    )


@sources_app.command("add-document")
def add_document_cmd(
    project: ProjectOpt,
    path: Annotated[Path, typer.Option("--path", help="PDF, DOCX, TXT or Markdown file.")],
    name: Annotated[
        Optional[str], typer.Option("--name", "-n", help="Display name (defaults to file name).")
    ] = None,
    db: DbOpt = None,
) -> None:
    """Add a document file source."""
    if not path.is_file():
        console.print(err_invalid_input(f"File not found: {path}"))
        raise typer.Exit(1)
    try:
        file_type = detect_file_type(path)
    except ExtractionError as exc:
        console.print(err_invalid_input(str(exc)))
        raise typer.Exit(1) from exc
    cfg = cli_config()
    _register(
        resolve_db(db, cfg),
        project,
        SourceType.DOCUMENT,
        name or path.name,
        {"path": str(path.resolve()), "file_type": file_type},
    )


@sources_app.command("add-workspace")
def add_workspace_cmd(
    project: ProjectOpt,
    name: Annotated[str, typer.Option("--name", "-n", help="Display name.")],
    page: Annotated[
        Optional[list[str]], typer.Option("--page", help="Notion page ID (repeatable).")
    ] = None,
    database_id: Annotated[
        Optional[list[str]], typer.Option("--database", help="Notion database ID (repeatable).")
    ] = None,
    token_env: Annotated[
        str, typer.Option("--token-env", help="Env var holding the integration token.")
    ] = "NOTION_API_KEY",
    auto_retrain: Annotated[
        bool, typer.Option("--auto-retrain", help="Re-sync on the retrain schedule.")
    ] = False,
    db: DbOpt = None,
) -> None:
    """Add a Notion workspace source made of pages and databases."""
    items = [("page", p) for p in page or []] + [("database", d) for d in database_id or []]
    if not items:
        console.print(err_invalid_input("Select at least one --page or --database."))
        raise typer.Exit(1)
    cfg = cli_config()
    _register(
        resolve_db(db, cfg),
        project,
        SourceType.WORKSPACE,
        name,
        {"token_env": token_env},
        auto_retrain=auto_retrain,
        items=items,
    )


@sources_app.command("list")
def list_cmd(
    project: Annotated[
        Optional[str], typer.Option("--project", "-p", help="Only this project.")
    ] = None,
    status: Annotated[
        Optional[str], typer.Option("--status", help="pending, processing, completed or failed.")
    ] = None,
    db: DbOpt = None,
) -> None:
    """List sources with their status and counters."""
    try:
        status_filter = SourceStatus(status) if status else None
    except ValueError as exc:
        console.print(err_invalid_input(f"Unknown status '{status}'."))
        raise typer.Exit(1) from exc

    cfg = cli_config()
    with resolve_db(db, cfg).session() as conn:
        sources = Repository(conn).list_sources(project_id=project, status=status_filter)

    if not sources:
        console.print("[dim]No sources found.[/]")
        return

    table = Table(title="Sources")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Chunks", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Error", style="red")
    for s in sources:
        table.add_row(
            s.id,
            escape(s.name),
            s.type.value,
            _status_label(s.status),
            str(s.chunks_count),
            str(s.tokens_count),
            escape(s.error_message or ""),
        )
    console.print(table)


def _status_label(status: SourceStatus) -> str:
    colour = {
        SourceStatus.PENDING: "yellow",
        SourceStatus.PROCESSING: "cyan",
        SourceStatus.COMPLETED: "green",
        SourceStatus.FAILED: "red",
    }[status]
    return f"[{colour}]{status.value}[/]"

