"""Query surface: embed a query string and search a project's chunks.

Two entry points:

- ``Retriever.query()`` for trusted, in-process callers (CLI, internal
  services). Default top-k is 5 and no hard cap applies.
- ``Retriever.query_with_api_key()`` for public callers. The bearer key is
  authenticated, the project's rate-limit window is checked, and top-k is
  capped at ``retrieval.max_top_k`` (20).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from lodestone.auth.api_keys import ApiKeyAuthenticator, AuthenticatedProject
from lodestone.auth.rate_limit import RateLimiter, RateLimitResult
from lodestone.config import RetrievalCfg
from lodestone.errors import AuthenticationError, RateLimitExceeded, ValidationError
from lodestone.ingest.embeddings import EmbeddingGenerator
from lodestone.rag.vector_index import SimilarityResult, VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class QueryOutcome:
    """Result of an authenticated query, with the limiter decision for headers."""

    project: AuthenticatedProject
    results: list[SimilarityResult]
    rate_limit: RateLimitResult


class Retriever:
    """Embed queries and rank chunks by cosine similarity.

    Args:
        index: Vector index bound to an open connection.
        embedder: Generator using the same model the chunks were embedded with.
        config: Defaults and limits for top-k, threshold and query length.
        authenticator: Required for ``query_with_api_key()``.
        rate_limiter: Required for ``query_with_api_key()``.
    """

    def __init__(
        self,
        index: VectorIndex,
        embedder: EmbeddingGenerator,
        config: RetrievalCfg | None = None,
        *,
        authenticator: ApiKeyAuthenticator | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._index = index
        self._embedder = embedder
        self._config = config or RetrievalCfg()
        self._authenticator = authenticator
        self._rate_limiter = rate_limiter

    def query(
        self,
        project_id: str,
        text: str,
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> list[SimilarityResult]:
        """Return the chunks of *project_id* most similar to *text*.

        Raises:
            ValidationError: For an empty or over-long query, or a bad top-k/threshold.
            EmbeddingError: If the query cannot be embedded.
        """
        text, top_k, threshold = self._validate(text, top_k, threshold)
        vector = self._embedder.embed(text)
        results = self._index.query(project_id, vector, threshold, top_k)
        logger.debug(
            "Query served",
            extra={"project_id": project_id, "top_k": top_k, "results": len(results)},
        )
        return results

    def query_with_api_key(
        self,
        authorization: str | None,
        text: str,
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> QueryOutcome:
        """Authenticate, rate-limit, then query with the public top-k cap.

        Raises:
            AuthenticationError: Missing, malformed, unknown, expired or
                inactive credential.
            RateLimitExceeded: The project's window is used up.
            ValidationError: Invalid query parameters.
        """
        if self._authenticator is None or self._rate_limiter is None:
            raise RuntimeError("query_with_api_key() needs an authenticator and a rate limiter")

        project = self._authenticator.authenticate(authorization)
        if project is None:
            logger.info("Query rejected: invalid API key")
            raise AuthenticationError("Invalid or missing API key")

        decision = self._rate_limiter.check(f"query:{project.project_id}")
        if not decision.allowed:
            logger.info("Query rejected: rate limited", extra={"project_id": project.project_id})
            raise RateLimitExceeded(decision)

        requested = self._config.top_k if top_k is None else top_k
        if isinstance(requested, int) and not isinstance(requested, bool) and requested >= 1:
            requested = min(requested, self._config.max_top_k)
        results = self.query(project.project_id, text, requested, threshold)
        return QueryOutcome(project=project, results=results, rate_limit=decision)

    def _validate(
        self, text: object, top_k: object, threshold: object
    ) -> tuple[str, int, float]:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Query is required and must be a non-empty string")
        if len(text) > self._config.max_query_chars:
            raise ValidationError(
                f"Query too long (max {self._config.max_query_chars} characters)"
            )
        top_k = self._config.top_k if top_k is None else top_k
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise ValidationError("top_k must be a positive integer")
        if threshold is None:
            threshold = self._config.threshold
        elif isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ValidationError("threshold must be a number")
        threshold = float(threshold)
        if not -1.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between -1 and 1")
        return text, top_k, threshold
