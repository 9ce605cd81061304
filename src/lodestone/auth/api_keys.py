"""API key generation and bearer-token authentication.

Keys look like ``lsk_<base64url of 32 random bytes>``. Only the SHA-256 hex
digest and the first 8 characters are stored; the plaintext is shown once.
Lookups go by ``(hash, prefix)``; the prefix only narrows the index scan.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from lodestone.db.models import ApiKey, from_timestamp, to_timestamp, utcnow
from lodestone.db.repository import Repository

if TYPE_CHECKING:
    from lodestone.db.connection import Database
    from lodestone.processing.runner import BackgroundRunner

logger = logging.getLogger(__name__)

KEY_TAG = "lsk_"
PREFIX_LENGTH = 8
MIN_KEY_LENGTH = 10
_BEARER = "Bearer "


@dataclass(frozen=True)
class GeneratedKey:
    key: str
    hash: str
    prefix: str


@dataclass(frozen=True)
class AuthenticatedProject:
    project_id: str
    organization_id: str
    api_key_id: str


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key() -> GeneratedKey:
    """Return fresh key material: plaintext, its hash and its lookup prefix."""
    token = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")
    key = KEY_TAG + token
    return GeneratedKey(key=key, hash=hash_api_key(key), prefix=key[:PREFIX_LENGTH])


def create_api_key(
    repo: Repository,
    project_id: str,
    name: str,
    expires_at: datetime | None = None,
) -> tuple[ApiKey, str]:
    """Persist a new key for *project_id*.

    Returns:
        ``(record, plaintext)``; the plaintext is not stored anywhere.
    """
    generated = generate_api_key()
    record = ApiKey(
        id=str(uuid.uuid4()),
        project_id=project_id,
        name=name,
        key_hash=generated.hash,
        key_prefix=generated.prefix,
        expires_at=to_timestamp(expires_at) if expires_at else None,
    )
    repo.add_api_key(record)
    return record, generated.key


class ApiKeyAuthenticator:
    """Resolve ``Authorization: Bearer <key>`` headers to a project scope.

    The last-used stamp is best-effort. With a *runner* and *db* it is
    written in the background on a separate connection; otherwise it is
    written inline. A failed stamp is logged and never rejects the request.
    """

    def __init__(
        self,
        repo: Repository,
        *,
        db: Database | None = None,
        runner: BackgroundRunner | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repo
        self._db = db
        self._runner = runner
        self._clock = clock

    def authenticate(self, authorization: str | None) -> AuthenticatedProject | None:
        if not authorization or not authorization.startswith(_BEARER):
            return None
        key = authorization[len(_BEARER) :]
        if len(key) < MIN_KEY_LENGTH:
            return None

        found = self._repo.find_active_api_key(hash_api_key(key), key[:PREFIX_LENGTH])
        if found is None:
            return None
        record, project = found
        if not project.is_active:
            logger.info("API key rejected: project inactive", extra={"project_id": project.id})
            return None
        now = self._clock()
        expires_at = from_timestamp(record.expires_at)
        if expires_at is not None and expires_at < now:
            logger.info("API key rejected: expired", extra={"api_key_id": record.id})
            return None

        self._stamp_last_used(record.id, now)
        return AuthenticatedProject(
            project_id=project.id,
            organization_id=project.organization_id,
            api_key_id=record.id,
        )

    def _stamp_last_used(self, key_id: str, when: datetime) -> None:
        if self._runner is not None and self._db is not None:
            self._runner.submit(_touch_in_session, self._db, key_id, when)
            return
        try:
            self._repo.touch_api_key(key_id, when)
        except sqlite3.Error:
            logger.warning(
                "Could not update API key last-used time",
                extra={"api_key_id": key_id},
                exc_info=True,
            )


def _touch_in_session(db: Database, key_id: str, when: datetime) -> None:
    """Stamp ``last_used_at`` on a fresh connection (runs on a worker thread)."""
    try:
        with db.session() as conn:
            Repository(conn).touch_api_key(key_id, when)
    except sqlite3.Error:
        logger.warning(
            "Could not update API key last-used time",
            extra={"api_key_id": key_id},
            exc_info=True,
        )
