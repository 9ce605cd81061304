"""lodestone serve — run the HTTP service under uvicorn."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
import uvicorn

from lodestone.api.app import create_app
from lodestone.cli.common import cli_config, resolve_db
from lodestone.logging_config import setup_logging


def serve_cmd(
    host: Annotated[str, typer.Option("--host", help="Bind address.")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Bind port.")] = 8000,
    json_logs: Annotated[
        bool, typer.Option("--json-logs", help="Log one JSON object per line.")
    ] = False,
    db: Annotated[Optional[Path], typer.Option("--db", help="Path to .lodestone.db.")] = None,
) -> None:
    """Serve the query, processing and cron endpoints."""
    cfg = cli_config()
    database = resolve_db(db, cfg, must_exist=False)
    if json_logs:
        setup_logging(json_output=True)
    app = create_app(cfg, db=database)
    # log_config=None keeps the handlers installed by setup_logging().
    uvicorn.run(app, host=host, port=port, log_config=None)
