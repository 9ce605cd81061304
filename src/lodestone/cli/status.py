"""lodestone status — knowledge base overview.

Shows the database, the embedding model, per-status source counts and
the projects with their chunk totals.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from lodestone.cli.common import cli_config, resolve_db
from lodestone.config import LodestoneConfig
from lodestone.db.repository import Repository
from lodestone.db.schema import schema_version

console = Console()


def status_cmd(
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Path to .lodestone.db."),
    ] = None,
) -> None:
    """Show knowledge base status: sources, chunks and projects."""
    cfg = cli_config()
    path = db if db is not None else Path(cfg.database.path)
    if not path.exists():
        console.print(
            Panel(
                "[yellow]No database found.[/]\n"
                "  Run:  lodestone init",
                title="[bold]Knowledge Base[/]",
                expand=False,
            )
        )
        raise typer.Exit(0)

    with resolve_db(path, cfg).session() as conn:
        _show_database_panel(path, conn, cfg)
        _show_sources_panel(conn)
        _show_projects_panel(conn)


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_database_panel(path: Path, conn: sqlite3.Connection, cfg: LodestoneConfig) -> None:
    size_mb = path.stat().st_size / (1024 * 1024)
    models = [
        row[0]
        for row in conn.execute(
            "SELECT DISTINCT embedding_model FROM chunks ORDER BY embedding_model"
        ).fetchall()
    ]
    lines = [
        f"Database:  {escape(str(path))} ({size_mb:.1f} MB, schema v{schema_version(conn)})",
        f"Model:     {escape(cfg.embedding.model)} ({cfg.embedding.dimensions} dims)",
    ]
    stale = [m for m in models if m != cfg.embedding.model]
    if stale:
        lines.append(
            f"[yellow]⚠[/] Chunks embedded with other models: {escape(', '.join(stale))}\n"
            "  Retrain those sources to query them with the current model."
        )
    console.print(Panel("\n".join(lines), title="[bold]Knowledge Base[/]", expand=False))


def _show_sources_panel(conn: sqlite3.Connection) -> None:
    counts = Repository(conn).count_sources_by_status()
    total_chunks = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
    lines = [
        f"Sources: [bold]{sum(counts.values())}[/]  |  Chunks: [bold]{total_chunks:,}[/]",
        f"  [yellow]pending[/] {counts['pending']}   "
        f"[cyan]processing[/] {counts['processing']}   "
        f"[green]completed[/] {counts['completed']}   "
        f"[red]failed[/] {counts['failed']}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Sources[/]", expand=False))


def _show_projects_panel(conn: sqlite3.Connection) -> None:
    rows = conn.execute(
        """
        SELECT p.id, p.name, p.is_active, o.plan,
               COUNT(s.id) AS sources,
               COALESCE(SUM(s.chunks_count), 0) AS chunks
        FROM projects p
        JOIN organizations o ON o.id = p.organization_id
        LEFT JOIN sources s ON s.project_id = p.id
        GROUP BY p.id
        ORDER BY p.created_at, p.id
        """
    ).fetchall()
    if not rows:
        console.print(
            Panel(
                "[dim]No projects yet.[/]\n"
                "  Run:  lodestone init --project <name>",
                title="[bold]Projects[/]",
                expand=False,
            )
        )
        return

    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Plan")
    table.add_column("Sources", justify="right")
    table.add_column("Chunks", justify="right")
    for row in rows:
        name = escape(row["name"]) if row["is_active"] else f"[dim]{escape(row['name'])} (inactive)[/]"
        table.add_row(row["id"], name, row["plan"], str(row["sources"]), f"{row['chunks']:,}")
    console.print(Panel(table, title="[bold]Projects[/]", expand=False))
