"""Lodestone database layer."""

from lodestone.db.connection import Database
from lodestone.db.migrations import MIGRATIONS, run_migrations
from lodestone.db.repository import Repository
from lodestone.db.schema import initialize
from lodestone.db.vectors import decode_vector, encode_vector

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "encode_vector",
    "decode_vector",
]
