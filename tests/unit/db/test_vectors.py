"""Tests for float32 vector encoding."""

from __future__ import annotations

import pytest

from lodestone.db.vectors import decode_vector, encode_vector


def test_encode_produces_four_bytes_per_dimension():
    assert len(encode_vector([0.1, 0.2, 0.3], 3)) == 12


def test_decode_restores_float32_values():
    decoded = decode_vector(encode_vector([0.5, -1.0, 2.0], 3))
    assert decoded == [0.5, -1.0, 2.0]


def test_encode_rejects_wrong_width():
    with pytest.raises(ValueError, match="expected 3"):
        encode_vector([0.1, 0.2], 3)


def test_encoded_vector_is_readable_by_sqlite_vec(tmp_db):
    blob = encode_vector([1.0, 0.0, 0.0], 3)
    distance = tmp_db.execute("SELECT vec_distance_cosine(?, ?)", (blob, blob)).fetchone()[0]
    assert distance == pytest.approx(0.0, abs=1e-6)
