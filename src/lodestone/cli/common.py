"""Helpers shared by the CLI commands: config, database and pipeline wiring."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import typer
from rich.console import Console

from lodestone.cli.errors import err_config, err_no_api_key, err_no_db, err_project_not_found
from lodestone.config import ConfigError, LodestoneConfig, load_config
from lodestone.db.connection import Database
from lodestone.db.models import Project
from lodestone.db.repository import Repository
from lodestone.db.schema import initialize
from lodestone.ingest.embeddings import EmbeddingGenerator, missing_api_key
from lodestone.processing.processor import SourceProcessor

console = Console()


def cli_config() -> LodestoneConfig:
    """Load the merged config, or print the problem and exit 1."""
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc


def resolve_db(db: Path | None, cfg: LodestoneConfig, *, must_exist: bool = True) -> Database:
    """Return the database named by ``--db`` or the config, with schema applied."""
    path = db if db is not None else Path(cfg.database.path)
    if must_exist and not path.exists():
        console.print(err_no_db(str(path)))
        raise typer.Exit(1)
    database = Database(path, busy_timeout=cfg.database.busy_timeout)
    with database.session() as conn:
        initialize(conn)
    return database


def require_api_key(cfg: LodestoneConfig) -> None:
    """Exit 1 with a hint when the embedding provider's key is not exported."""
    missing = missing_api_key(cfg.embedding.model)
    if missing is not None:
        console.print(err_no_api_key(*missing))
        raise typer.Exit(1)


def require_project(conn: sqlite3.Connection, project_id: str) -> Project:
    project = Repository(conn).get_project(project_id)
    if project is None:
        console.print(err_project_not_found(project_id))
        raise typer.Exit(1)
    return project


def build_processor(database: Database, cfg: LodestoneConfig) -> SourceProcessor:
    return SourceProcessor(database, EmbeddingGenerator(cfg.embedding), cfg)
