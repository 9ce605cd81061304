"""Lodestone command-line interface (typer + rich)."""
