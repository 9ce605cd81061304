"""lodestone keys — manage project API keys for the public query endpoint.

The plaintext key is shown exactly once, at creation; only its hash and
lookup prefix are stored.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lodestone.auth.api_keys import create_api_key
from lodestone.cli.common import cli_config, require_project, resolve_db
from lodestone.db.models import utcnow
from lodestone.db.repository import Repository

console = Console()

keys_app = typer.Typer(help="Create, list and revoke project API keys.", no_args_is_help=True)

DbOpt = Annotated[Optional[Path], typer.Option("--db", help="Path to .lodestone.db.")]


@keys_app.command("create")
def create_cmd(
    project: Annotated[str, typer.Option("--project", "-p", help="Project ID.")],
    name: Annotated[str, typer.Option("--name", "-n", help="Label for the key.")],
    expires_in_days: Annotated[
        Optional[int], typer.Option("--expires-in-days", help="Expire after N days.")
    ] = None,
    db: DbOpt = None,
) -> None:
    """Create an API key and print it once."""
    cfg = cli_config()
    expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None
    with resolve_db(db, cfg).session() as conn:
        require_project(conn, project)
        record, plaintext = create_api_key(Repository(conn), project, name, expires_at)

    console.print(f"[green]✓[/] API key created: {record.id}")
    console.print("  Store it now; it cannot be shown again.\n")
    typer.echo(plaintext)


@keys_app.command("list")
def list_cmd(
    project: Annotated[str, typer.Option("--project", "-p", help="Project ID.")],
    db: DbOpt = None,
) -> None:
    """List a project's keys (prefix only)."""
    cfg = cli_config()
    with resolve_db(db, cfg).session() as conn:
        keys = Repository(conn).list_api_keys(project)
    if not keys:
        console.print("[dim]No API keys.[/]")
        return

    table = Table(title="API keys")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Prefix")
    table.add_column("Active")
    table.add_column("Expires", style="dim")
    table.add_column("Last used", style="dim")
    for k in keys:
        table.add_row(
            k.id,
            escape(k.name),
            k.key_prefix + "…",
            "[green]yes[/]" if k.is_active else "[red]no[/]",
            k.expires_at or "",
            k.last_used_at or "never",
        )
    console.print(table)


@keys_app.command("revoke")
def revoke_cmd(
    key_id: Annotated[str, typer.Argument(help="API key ID.")],
    db: DbOpt = None,
) -> None:
    """Deactivate an API key."""
    cfg = cli_config()
    with resolve_db(db, cfg).session() as conn:
        revoked = Repository(conn).revoke_api_key(key_id)
    if not revoked:
        console.print(f"[yellow]API key not found:[/] '{escape(key_id)}'")
        raise typer.Exit(1)
    console.print(f"[green]✓[/] Revoked {key_id}")
