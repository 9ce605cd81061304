"""Exception taxonomy shared by the ingestion and retrieval pipeline.

  ValidationError      bad input (text, URL, credentials); nothing is mutated
  ExtractionError      content could not be loaded; the run fails
  EmbeddingError       provider call failed; the run fails with no chunk writes
  AuthenticationError  rejected credential, before any work starts
  RateLimitExceeded    caller window used up, before any work starts
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lodestone.auth.rate_limit import RateLimitResult


class LodestoneError(Exception):
    """Base class for all errors raised by lodestone."""


class ValidationError(LodestoneError, ValueError):
    """Raised when caller input is missing or malformed."""


class ExtractionError(LodestoneError):
    """Raised when a content collaborator cannot produce text for a source."""


class EmbeddingError(LodestoneError):
    """Raised when the embedding provider fails or returns a malformed batch."""


class AuthenticationError(LodestoneError):
    """Raised when a bearer credential does not resolve to an active project."""


class RateLimitExceeded(LodestoneError):
    """Raised when a caller identity has used up its request window.

    Attributes:
        result: The limiter decision, including the window's reset time.
    """

    def __init__(self, result: RateLimitResult) -> None:
        super().__init__("Rate limit exceeded")
        self.result = result
