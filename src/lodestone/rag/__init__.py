"""Retrieval: chunk vector storage and similarity queries."""

from lodestone.rag.retriever import QueryOutcome, Retriever
from lodestone.rag.vector_index import ChunkRecord, SimilarityResult, VectorIndex

__all__ = ["ChunkRecord", "QueryOutcome", "Retriever", "SimilarityResult", "VectorIndex"]
