"""Lodestone CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated, Optional

import typer

from lodestone.cli.init import init_cmd
from lodestone.cli.keys import keys_app
from lodestone.cli.process import auto_retrain_cmd, process_cmd, recover_cmd, retrain_cmd
from lodestone.cli.query import query_cmd
from lodestone.cli.remove import remove_cmd
from lodestone.cli.serve import serve_cmd
from lodestone.cli.sources import sources_app
from lodestone.cli.status import status_cmd
from lodestone.logging_config import setup_logging


def _installed_version() -> str:
    try:
        return importlib.metadata.version("lodestone")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"lodestone {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="lodestone",
    help=(
        "Lodestone — knowledge base ingestion and retrieval.\n\n"
        "  lodestone sources add-*  Register text, Q&A, website, document or workspace sources.\n"
        "  lodestone process        Chunk, embed and index pending sources.\n"
        "  lodestone serve          Run the query and processing HTTP service."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR (env: LODESTONE_LOG_LEVEL)."),
    ] = None,
) -> None:
    """Lodestone — knowledge base ingestion and retrieval."""
    setup_logging(log_level)


app.command("init")(init_cmd)
app.add_typer(sources_app, name="sources")
app.command("remove")(remove_cmd)
app.command("process")(process_cmd)
app.command("retrain")(retrain_cmd)
app.command("auto-retrain")(auto_retrain_cmd)
app.command("recover")(recover_cmd)
app.command("query")(query_cmd)
app.add_typer(keys_app, name="keys")
app.command("status")(status_cmd)
app.command("serve")(serve_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Lodestone version."""
    typer.echo(f"lodestone {_installed_version()}")


if __name__ == "__main__":
    app()
