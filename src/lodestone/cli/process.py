"""lodestone process / retrain / auto-retrain / recover — run the pipeline.

  lodestone process                  sweep pending sources
  lodestone process --source <id>    process one pending source
  lodestone retrain --source <id>    drop chunks, reset and process again
  lodestone auto-retrain             run the scheduled re-crawl once
  lodestone recover                  requeue sources stuck in processing
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lodestone.cli.common import build_processor, cli_config, require_api_key, resolve_db
from lodestone.cli.errors import (
    err_already_processing,
    err_processing_failed,
    err_source_not_found,
)
from lodestone.db.models import utcnow
from lodestone.processing.processor import ProcessingResult
from lodestone.processing.scheduler import RetrainScheduler, SweepReport, sweep_pending

console = Console()

DbOpt = Annotated[Optional[Path], typer.Option("--db", help="Path to .lodestone.db.")]


def process_cmd(
    source: Annotated[
        Optional[str], typer.Option("--source", "-s", help="Process only this source.")
    ] = None,
    limit: Annotated[
        Optional[int], typer.Option("--limit", help="Pending sources per sweep.")
    ] = None,
    db: DbOpt = None,
) -> None:
    """Process pending sources (or a single one with --source)."""
    cfg = cli_config()
    require_api_key(cfg)
    processor = build_processor(resolve_db(db, cfg), cfg)

    if source:
        with console.status(f"Processing {source} …"):
            result = processor.process_source(source)
        _report_single(source, result)
        return

    with console.status("Processing pending sources …"):
        report = sweep_pending(processor, limit=limit)
    if report.total == 0:
        console.print("[dim]No pending sources.[/]")
        return
    _print_report("Processing sweep", report)
    if report.failed:
        raise typer.Exit(1)


def retrain_cmd(
    source: Annotated[str, typer.Option("--source", "-s", help="Source ID to retrain.")],
    db: DbOpt = None,
) -> None:
    """Delete a source's chunks and run the pipeline on it again."""
    cfg = cli_config()
    require_api_key(cfg)
    processor = build_processor(resolve_db(db, cfg), cfg)
    with console.status(f"Retraining {source} …"):
        result = processor.retrain_source(source)
    _report_single(source, result)


def auto_retrain_cmd(db: DbOpt = None) -> None:
    """Retrain every source that is due on the auto-retrain schedule."""
    cfg = cli_config()
    require_api_key(cfg)
    scheduler = RetrainScheduler(build_processor(resolve_db(db, cfg), cfg), cfg.retrain)
    with console.status("Running auto-retrain …"):
        report = scheduler.run()
    if report.total == 0:
        console.print("[dim]No sources due for auto-retrain.[/]")
        return
    _print_report("Auto-retrain", report)


def recover_cmd(
    older_than: Annotated[
        Optional[float],
        typer.Option(
            "--older-than",
            help="Minutes without progress before a run counts as stalled.",
        ),
    ] = None,
    db: DbOpt = None,
) -> None:
    """Return sources stuck in processing to pending."""
    cfg = cli_config()
    processor = build_processor(resolve_db(db, cfg), cfg)
    cutoff = utcnow() - timedelta(minutes=older_than) if older_than is not None else None
    ids = processor.recover_stalled(cutoff)
    if not ids:
        console.print("[dim]No stalled sources.[/]")
        return
    for source_id in ids:
        console.print(f"  [green]✓[/] requeued {source_id}")
    console.print(f"\n{len(ids)} source(s) back to pending. Run:  lodestone process")


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _report_single(source_id: str, result: ProcessingResult) -> None:
    if result.success:
        console.print(
            f"[green]✓[/] {source_id}: {result.chunks_created} chunks, "
            f"{result.total_tokens:,} tokens"
        )
        return
    if result.error == "Source not found":
        console.print(err_source_not_found(source_id))
    elif result.conflict:
        console.print(err_already_processing(source_id))
    elif result.skipped:
        console.print(f"[yellow]Skipped:[/] {escape(result.error or '')}")
    else:
        console.print(err_processing_failed(source_id, result.error or "unknown error"))
    raise typer.Exit(1)


def _print_report(title: str, report: SweepReport) -> None:
    table = Table(title=title)
    table.add_column("Source", style="dim")
    table.add_column("Name")
    table.add_column("Result")
    table.add_column("Error", style="red")
    colours = {"success": "green", "failed": "red", "skipped": "yellow"}
    for d in report.details:
        table.add_row(
            d.source_id,
            escape(d.source_name),
            f"[{colours[d.status]}]{d.status}[/]",
            escape(d.error or ""),
        )
    console.print(table)
    console.print(
        f"Total: [bold]{report.total}[/]  |  success: {report.success}  |  "
        f"failed: {report.failed}  |  skipped: {report.skipped}"
    )
