"""Query-path gates: API key authentication and rate limiting."""

from lodestone.auth.api_keys import (
    ApiKeyAuthenticator,
    AuthenticatedProject,
    create_api_key,
    generate_api_key,
    hash_api_key,
)
from lodestone.auth.rate_limit import RateLimiter, RateLimitResult

__all__ = [
    "ApiKeyAuthenticator",
    "AuthenticatedProject",
    "RateLimitResult",
    "RateLimiter",
    "create_api_key",
    "generate_api_key",
    "hash_api_key",
]
