"""Tests for API key generation and bearer authentication."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from lodestone.auth.api_keys import (
    KEY_TAG,
    ApiKeyAuthenticator,
    create_api_key,
    generate_api_key,
    hash_api_key,
)
from lodestone.db.models import from_timestamp, utcnow


def test_generate_api_key_shape():
    generated = generate_api_key()
    assert generated.key.startswith(KEY_TAG)
    assert len(generated.key) == len(KEY_TAG) + 43
    assert generated.prefix == generated.key[:8]
    assert generated.hash == hash_api_key(generated.key)
    assert len(generated.hash) == 64
    assert generate_api_key().key != generated.key


def test_create_api_key_stores_only_hash(repo, tenant):
    record, plaintext = create_api_key(repo, "proj-1", "ci")
    [stored] = repo.list_api_keys("proj-1")
    assert stored.id == record.id
    assert stored.key_hash == hash_api_key(plaintext)
    assert plaintext not in (stored.key_hash, stored.key_prefix)


def test_authenticate_valid_key(repo, tenant):
    record, plaintext = create_api_key(repo, "proj-1", "ci")
    project = ApiKeyAuthenticator(repo).authenticate(f"Bearer {plaintext}")
    assert project is not None
    assert (project.project_id, project.organization_id, project.api_key_id) == (
        "proj-1",
        "org-1",
        record.id,
    )


@pytest.mark.parametrize(
    "header",
    [None, "", "bearer lsk_abcdefghijk", "Basic abc", "Bearer ", "Bearer lsk_", "Bearer lsk_unknownkey123"],
)
def test_authenticate_rejects_malformed_or_unknown(repo, tenant, header):
    assert ApiKeyAuthenticator(repo).authenticate(header) is None


def test_authenticate_rejects_revoked_key(repo, tenant):
    record, plaintext = create_api_key(repo, "proj-1", "ci")
    repo.revoke_api_key(record.id)
    assert ApiKeyAuthenticator(repo).authenticate(f"Bearer {plaintext}") is None


def test_authenticate_rejects_expired_key(repo, tenant):
    _, plaintext = create_api_key(repo, "proj-1", "ci", expires_at=utcnow() - timedelta(minutes=1))
    assert ApiKeyAuthenticator(repo).authenticate(f"Bearer {plaintext}") is None


def test_authenticate_accepts_future_expiry(repo, tenant):
    _, plaintext = create_api_key(repo, "proj-1", "ci", expires_at=utcnow() + timedelta(days=1))
    assert ApiKeyAuthenticator(repo).authenticate(f"Bearer {plaintext}") is not None


def test_authenticate_rejects_inactive_project(repo, tenant):
    _, plaintext = create_api_key(repo, "proj-1", "ci")
    repo.set_project_active("proj-1", False)
    assert ApiKeyAuthenticator(repo).authenticate(f"Bearer {plaintext}") is None


def test_authenticate_stamps_last_used(repo, tenant):
    _, plaintext = create_api_key(repo, "proj-1", "ci")
    now = utcnow().replace(microsecond=0)
    ApiKeyAuthenticator(repo, clock=lambda: now).authenticate(f"Bearer {plaintext}")
    [stored] = repo.list_api_keys("proj-1")
    assert from_timestamp(stored.last_used_at) == now


def test_stamp_failure_does_not_reject(repo, tenant, monkeypatch):
    _, plaintext = create_api_key(repo, "proj-1", "ci")

    def broken(*args):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(repo, "touch_api_key", broken)
    assert ApiKeyAuthenticator(repo).authenticate(f"Bearer {plaintext}") is not None


def test_stamp_runs_in_background_with_runner(repo, tenant, database):
    _, plaintext = create_api_key(repo, "proj-1", "ci")
    runner = MagicMock()
    authenticator = ApiKeyAuthenticator(repo, db=database, runner=runner)

    assert authenticator.authenticate(f"Bearer {plaintext}") is not None
    runner.submit.assert_called_once()
    fn, db, key_id, when = runner.submit.call_args.args
    assert db is database

    fn(db, key_id, when)
    [stored] = repo.list_api_keys("proj-1")
    assert stored.last_used_at is not None


def test_background_stamp_failure_is_logged(repo, tenant, database, caplog):
    _, plaintext = create_api_key(repo, "proj-1", "ci")
    runner = MagicMock()
    ApiKeyAuthenticator(repo, db=database, runner=runner).authenticate(f"Bearer {plaintext}")
    fn, db, key_id, when = runner.submit.call_args.args

    broken = MagicMock()
    broken.session.side_effect = sqlite3.OperationalError("database is locked")
    fn(broken, key_id, when)
    assert "Could not update API key last-used time" in caplog.text
