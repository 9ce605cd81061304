"""Lodestone rich error messages — actionable feedback.

Every message carries:
  1. What went wrong
  2. The exact action the user should take to fix it

Usage:
    from lodestone.cli.errors import err_no_db
    console.print(err_no_db(".lodestone.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from rich.markup import escape


def err_no_api_key(provider: str, env_var: str | None = None) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_var = env_var or f"{provider.upper()}_API_KEY"
    return (
        f"[red]Error:[/] No API key for '{escape(provider)}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".lodestone.db") -> str:
    """No knowledge base database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{escape(db_path)}'.\n"
        "  Run:  lodestone init"
    )


def err_config(message: str) -> str:
    """Config file failed validation (forbidden key or bad value)."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {escape(message)}\n"
        "  Fix lodestone.yaml or ~/.lodestone/config.yaml and retry."
    )


def err_project_not_found(project_id: str) -> str:
    return (
        f"[red]Error:[/] Project '{escape(project_id)}' not found.\n"
        "  Run:  lodestone status  to see all projects,\n"
        "  or:   lodestone init --project <name>  to create one."
    )


def err_source_not_found(source_id: str) -> str:
    """Source not found in database."""
    return (
        f"[yellow]Source not found:[/] '{escape(source_id)}' is not in the knowledge base.\n"
        "  Run:  lodestone sources list  to see all sources."
    )


def err_invalid_input(message: str) -> str:
    return f"[red]Error:[/] {escape(message)}\n  Run the command with --help for usage."


def err_processing_failed(source_id: str, message: str) -> str:
    return (
        f"[red]✗[/] Processing failed for '{escape(source_id)}': {escape(message)}\n"
        f"  Fix the cause, then run:  lodestone retrain --source {escape(source_id)}"
    )


def err_already_processing(source_id: str) -> str:
    return (
        f"[yellow]Source is already being processed:[/] '{escape(source_id)}'\n"
        "  Wait for the current run to finish.\n"
        "  If a previous run crashed, run:  lodestone recover"
    )
