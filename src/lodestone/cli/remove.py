"""lodestone remove — delete a source and everything derived from it.

The source's items and chunks are removed by the foreign-key cascade.

Usage:
  lodestone remove --source <id>
  lodestone remove --source <id> --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape

from lodestone.cli.common import cli_config, resolve_db
from lodestone.cli.errors import err_already_processing, err_source_not_found
from lodestone.db.models import SourceStatus
from lodestone.db.repository import Repository

console = Console()


def remove_cmd(
    source: Annotated[
        str,
        typer.Option("--source", "-s", help="Source ID to remove."),
    ],
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="Path to .lodestone.db."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove a source and all its chunks from the knowledge base."""
    cfg = cli_config()
    with resolve_db(db, cfg).session() as conn:
        repo = Repository(conn)
        existing = repo.get_source(source)
        if existing is None:
            console.print(err_source_not_found(source))
            raise typer.Exit(0)
        if existing.status == SourceStatus.PROCESSING:
            console.print(err_already_processing(source))
            raise typer.Exit(1)

        chunk_count = repo.count_chunks_by_source(existing.id)
        items = len(repo.list_items(existing.id, include_excluded=True))
        console.print(f"\nRemove source: [bold]{escape(existing.name)}[/] ({existing.id})")
        console.print(f"  Chunks: {chunk_count}  |  Items: {items}")

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        repo.delete_source(existing.id)

    console.print(f"\n[green]✓[/] Removed: {escape(existing.name)}")
    console.print(f"  {chunk_count} chunks deleted")
