"""lodestone init — create the knowledge base and a starter config.

Creates:
  .lodestone.db      knowledge base with schema applied
  lodestone.yaml     project config (written once, never overwritten)

With ``--project`` it also seeds an organization and a project and prints
their IDs, which ``sources add-*`` and ``keys create`` need.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape

from lodestone.config import LodestoneConfig, write_project_config
from lodestone.db.connection import Database
from lodestone.db.models import Organization, Project
from lodestone.db.repository import Repository
from lodestone.db.schema import initialize

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    project: Annotated[
        Optional[str],
        typer.Option("--project", "-p", help="Seed a project with this name."),
    ] = None,
    organization: Annotated[
        Optional[str],
        typer.Option("--org", help="Organization name (defaults to the project name)."),
    ] = None,
    plan: Annotated[
        str,
        typer.Option("--plan", help="Organization plan (free, starter, pro, enterprise)."),
    ] = "free",
) -> None:
    """Initialize a Lodestone knowledge base in PROJECT_DIR."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)
    cfg = LodestoneConfig()

    db_path = project_dir / cfg.database.path
    existed = db_path.exists()
    with Database(db_path).session() as conn:
        initialize(conn)
        if existed:
            console.print(f"  [yellow]⚠[/]  {db_path} already exists; schema is up to date.")
        else:
            console.print(f"  [green]✓[/] {db_path.name}")

        cfg_path = write_project_config(project_dir, cfg)
        console.print(f"  [green]✓[/] {cfg_path.name}")

        if project:
            org = Organization(id=str(uuid.uuid4()), name=organization or project, plan=plan)
            proj = Project(id=str(uuid.uuid4()), organization_id=org.id, name=project)
            repo = Repository(conn)
            repo.add_organization(org)
            repo.add_project(proj)
            console.print(f"  [green]✓[/] organization {escape(org.name)} ({plan}): {org.id}")
            console.print(f"  [green]✓[/] project {escape(proj.name)}: {proj.id}")

    console.print("\n[bold green]✓ Knowledge base initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. lodestone sources add-text --project <id> --name <name> --content <text>")
    console.print("  2. lodestone process")
    console.print("  3. lodestone keys create --project <id> --name <name>")
    console.print("  4. lodestone serve")
