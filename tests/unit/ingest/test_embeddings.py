"""Tests for EmbeddingGenerator."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from lodestone.config import EmbeddingCfg
from lodestone.errors import EmbeddingError
from lodestone.ingest.embeddings import EmbeddingGenerator, missing_api_key

_PATCH = "lodestone.ingest.embeddings.litellm.embedding"


def _response(vectors: list[list[float]], order: list[int] | None = None) -> SimpleNamespace:
    order = order if order is not None else list(range(len(vectors)))
    return SimpleNamespace(data=[{"index": i, "embedding": vectors[i]} for i in order])


def _generator(**overrides) -> EmbeddingGenerator:
    fields = {"model": "test/embedding-3d", "dimensions": 3}
    fields.update(overrides)
    return EmbeddingGenerator(EmbeddingCfg(**fields))


# ------------------------------------------------------------------
# embed_batch
# ------------------------------------------------------------------


def test_empty_input_skips_provider():
    with patch(_PATCH) as mocked:
        assert _generator().embed_batch([]) == []
    mocked.assert_not_called()


def test_results_follow_input_order_not_response_order():
    vectors = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
    with patch(_PATCH, return_value=_response(vectors, order=[2, 0, 1])):
        assert _generator().embed_batch(["a", "b", "c"]) == vectors


def test_sub_batches_are_concatenated_in_order():
    def side_effect(model, input, **kwargs):
        return _response([[float(ord(t)), 0.0, 0.0] for t in input], order=list(reversed(range(len(input)))))

    with patch(_PATCH, side_effect=side_effect) as mocked:
        result = _generator(batch_size=2).embed_batch(list("abcde"))

    assert mocked.call_count == 3
    assert [call.kwargs["input"] for call in mocked.call_args_list] == [["a", "b"], ["c", "d"], ["e"]]
    assert [v[0] for v in result] == [float(ord(c)) for c in "abcde"]


def test_embed_single_text(mock_embedding):
    assert _generator().embed("alpha") == [1.0, 0.0, 0.1]


def test_request_carries_timeout_and_retries():
    with patch(_PATCH, return_value=_response([[0.1, 0.2, 0.3]])) as mocked:
        _generator(timeout=12.0, num_retries=0).embed("x")
    kwargs = mocked.call_args.kwargs
    assert kwargs["model"] == "test/embedding-3d"
    assert kwargs["timeout"] == 12.0
    assert kwargs["num_retries"] == 0


def test_dimensions_sent_for_v3_models_only():
    v3 = _generator(model="openai/text-embedding-3-small")
    other = _generator(model="ollama/nomic-embed-text")
    with patch(_PATCH, return_value=_response([[0.1, 0.2, 0.3]])) as mocked:
        v3.embed("x")
        assert mocked.call_args.kwargs["dimensions"] == 3
        other.embed("x")
        assert "dimensions" not in mocked.call_args.kwargs


# ------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------


def test_provider_exception_wrapped():
    with patch(_PATCH, side_effect=RuntimeError("quota exceeded")):
        with pytest.raises(EmbeddingError, match="quota exceeded"):
            _generator().embed_batch(["x"])


def test_failed_sub_batch_fails_whole_call():
    ok = _response([[0.1, 0.2, 0.3], [0.1, 0.2, 0.3]])
    with patch(_PATCH, side_effect=[ok, RuntimeError("503")]):
        with pytest.raises(EmbeddingError):
            _generator(batch_size=2).embed_batch(["a", "b", "c"])


def test_count_mismatch_raises():
    with patch(_PATCH, return_value=_response([[0.1, 0.2, 0.3]])):
        with pytest.raises(EmbeddingError, match="1 vectors for 2 inputs"):
            _generator().embed_batch(["a", "b"])


def test_dimension_mismatch_raises():
    with patch(_PATCH, return_value=_response([[0.1, 0.2]])):
        with pytest.raises(EmbeddingError, match="expected 3"):
            _generator().embed("a")


def test_defaults_when_no_config():
    gen = EmbeddingGenerator()
    assert gen.model == "openai/text-embedding-3-small"
    assert gen.dimensions == 1536

