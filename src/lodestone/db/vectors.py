"""Embedding vector encoding for the ``chunks.embedding`` column.

Vectors are stored as packed float32 blobs, the format
sqlite-vec's ``vec_distance_cosine()`` reads natively.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence

from sqlite_vec import serialize_float32


def encode_vector(vector: Sequence[float], dimensions: int) -> bytes:
    """Validate *vector* against the system-wide width and pack it for storage.

    Raises:
        ValueError: If the vector length differs from *dimensions*.
    """
    if len(vector) != dimensions:
        raise ValueError(
            f"Embedding has {len(vector)} dimensions, expected {dimensions}."
        )
    return serialize_float32(list(vector))


def decode_vector(blob: bytes) -> list[float]:
    """Unpack a float32 blob written by ``encode_vector()``."""
    count = len(blob) // 4
    return list(struct.unpack(f"{count}f", blob))
