"""Lodestone — per-project knowledge base: ingestion, embeddings, similarity retrieval."""

__version__ = "0.1.0"
