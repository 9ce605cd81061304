"""lodestone query — search a project's knowledge base from the terminal."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from lodestone.cli.common import cli_config, require_api_key, require_project, resolve_db
from lodestone.cli.errors import err_invalid_input
from lodestone.errors import EmbeddingError, ValidationError
from lodestone.ingest.embeddings import EmbeddingGenerator
from lodestone.rag.retriever import Retriever
from lodestone.rag.vector_index import VectorIndex

console = Console()


def query_cmd(
    text: Annotated[str, typer.Argument(help="Query text.")],
    project: Annotated[str, typer.Option("--project", "-p", help="Project ID to search.")],
    top_k: Annotated[
        Optional[int], typer.Option("--top-k", "-k", help="Number of results.")
    ] = None,
    threshold: Annotated[
        Optional[float], typer.Option("--threshold", help="Minimum cosine similarity.")
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print results as JSON.")] = False,
    db: Annotated[Optional[Path], typer.Option("--db", help="Path to .lodestone.db.")] = None,
) -> None:
    """Return the chunks most similar to TEXT."""
    cfg = cli_config()
    require_api_key(cfg)
    embedder = EmbeddingGenerator(cfg.embedding)
    with resolve_db(db, cfg).session() as conn:
        require_project(conn, project)
        retriever = Retriever(
            VectorIndex(conn, embedder.dimensions, embedder.model), embedder, cfg.retrieval
        )
        try:
            results = retriever.query(project, text, top_k, threshold)
        except ValidationError as exc:
            console.print(err_invalid_input(str(exc)))
            raise typer.Exit(1) from exc
        except EmbeddingError as exc:
            console.print(f"[red]Error:[/] {escape(str(exc))}")
            raise typer.Exit(1) from exc

    if as_json:
        typer.echo(
            json.dumps(
                [
                    {
                        "id": r.chunk_id,
                        "content": r.content,
                        "metadata": r.metadata,
                        "similarity": r.similarity,
                        "source_id": r.source_id,
                    }
                    for r in results
                ],
                indent=2,
            )
        )
        return

    if not results:
        console.print("[dim]No chunks above the similarity threshold.[/]")
        return
    for rank, r in enumerate(results, start=1):
        label = r.metadata.get("source_name", r.source_id)
        console.print(
            Panel(
                escape(r.content),
                title=f"[bold]{rank}[/]  {escape(str(label))}  [dim]{r.similarity:.3f}[/]",
                expand=False,
            )
        )
