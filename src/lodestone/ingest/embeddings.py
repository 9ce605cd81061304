"""Embedding generation through LiteLLM.

``embed_batch()`` returns vectors in input order. Providers may return the
items of one call in any order, so each response is re-sorted by its
``index`` field before results are concatenated.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence

import litellm

from lodestone.config import EmbeddingCfg
from lodestone.errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingGenerator:
    """Turn text into fixed-width vectors with a single configured model.

    Args:
        config: Model, dimensions, batch size and timeout. Defaults to
            ``openai/text-embedding-3-small`` at 1536 dimensions.
    """

    def __init__(self, config: EmbeddingCfg | None = None) -> None:
        self._config = config or EmbeddingCfg()

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def dimensions(self) -> int:
        return self._config.dimensions

    def embed(self, text: str) -> list[float]:
        """Return the embedding vector for a single *text*."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Return one vector per input text, in input order.

        An empty input returns ``[]`` without calling the provider. Any
        failed sub-batch fails the whole call.

        Raises:
            EmbeddingError: On provider errors or a malformed response.
        """
        if not texts:
            return []

        size = self._config.batch_size
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), size):
            batch = list(texts[offset : offset + size])
            vectors.extend(self._embed_sub_batch(batch))
            logger.debug(
                "Embedded sub-batch",
                extra={"model": self.model, "offset": offset, "count": len(batch)},
            )
        return vectors

    def _embed_sub_batch(self, batch: list[str]) -> list[list[float]]:
        kwargs: dict[str, object] = {
            "model": self._config.model,
            "input": batch,
            "timeout": self._config.timeout,
            "num_retries": self._config.num_retries,
        }
        if _supports_dimensions(self._config.model):
            kwargs["dimensions"] = self._config.dimensions

        try:
            response = litellm.embedding(**kwargs)
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding request to '{self._config.model}' failed: {exc}"
            ) from exc

        items = sorted(response.data, key=lambda item: item["index"])
        if len(items) != len(batch):
            raise EmbeddingError(
                f"Embedding provider returned {len(items)} vectors for {len(batch)} inputs."
            )
        vectors = [list(item["embedding"]) for item in items]
        for vector in vectors:
            if len(vector) != self._config.dimensions:
                raise EmbeddingError(
                    f"Embedding has {len(vector)} dimensions, "
                    f"expected {self._config.dimensions}."
                )
        return vectors


# Provider prefix → env var holding its key; None for local providers.
_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "ollama": None,
}


def missing_api_key(model: str) -> tuple[str, str] | None:
    """Return ``(provider, env_var)`` if *model*'s provider key is not set.

    Models without a provider prefix are treated as OpenAI. Unknown providers
    are assumed to be configured some other way.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)
    if env_var is None or os.environ.get(env_var):
        return None
    return provider, env_var


def _supports_dimensions(model: str) -> bool:
    # Only the v3 OpenAI family accepts a requested output width.
    return "text-embedding-3" in model

