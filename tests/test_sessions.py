"""Unit tests for auth/sessions.py -- opaque server-side sessions.

Covers:
- tokens are opaque and only their HMAC is stored
- absolute expiry (valid 1s before, invalid 1s after), never extended by activity
- destroy / destroy_all, idempotent logout
- revocation on credential change, deactivation and principal removal
- sessions created without a version stamp the principal's current one
- storage failures fail closed
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from auth.database import sessions as sessions_table
from auth.errors import StorageUnavailable
from auth.models import SessionStatus

DAY = 24 * 60 * 60


@pytest.fixture
def principal_id(credentials):
    return credentials.create_principal("ops@example.com", role="operator", password="pass-123")


def test_create_returns_opaque_token_and_stores_hash(sessions, db, principal_id):
    token = sessions.create(principal_id, "operator")
    assert len(token) >= 40
    with db.connect() as conn:
        row = conn.execute(select(sessions_table)).fetchone()
    assert row.token_hash != token
    assert row.token_hash == sessions.hash_token(token)


def test_validate_returns_session_with_principal_details(sessions, principal_id):
    token = sessions.create(principal_id, "operator")
    session = sessions.validate(token)
    assert session is not None
    assert session.principal_id == principal_id
    assert session.role == "operator"
    assert session.identifier == "ops@example.com"
    assert session.expires_at == session.created_at + timedelta(seconds=DAY)


def test_tokens_are_unique(sessions, principal_id):
    tokens = {sessions.create(principal_id, "operator") for _ in range(20)}
    assert len(tokens) == 20


@pytest.mark.parametrize(("offset", "alive"), [(DAY - 1, True), (DAY, False), (DAY + 1, False)])
def test_absolute_expiry(sessions, principal_id, clock, offset, alive):
    token = sessions.create(principal_id, "operator")
    clock.advance(offset)
    assert (sessions.validate(token) is not None) is alive


def test_activity_does_not_extend_expiry(sessions, principal_id, clock):
    token = sessions.create(principal_id, "operator")
    for _ in range(4):
        clock.advance(hours=6)
        sessions.validate(token)
    assert sessions.validate(token) is None
    assert sessions.status(token) is SessionStatus.EXPIRED


def test_validate_touches_last_activity(sessions, principal_id, clock):
    token = sessions.create(principal_id, "operator")
    clock.advance(minutes=30)
    session = sessions.validate(token)
    assert session.last_activity == clock.now
    assert sessions.validate(token).last_activity == clock.now


def test_unknown_and_empty_tokens(sessions):
    assert sessions.validate("not-a-real-token") is None
    assert sessions.validate("") is None
    assert sessions.status("not-a-real-token") is SessionStatus.NOT_FOUND


def test_destroy_is_idempotent(sessions, principal_id):
    token = sessions.create(principal_id, "operator")
    sessions.destroy(token)
    assert sessions.validate(token) is None
    sessions.destroy(token)
    sessions.destroy("")


def test_destroy_all(sessions, principal_id, credentials):
    other = credentials.create_principal("other@example.com", role="operator", password="pass-123")
    mine = [sessions.create(principal_id, "operator") for _ in range(3)]
    theirs = sessions.create(other, "operator")
    assert sessions.destroy_all(principal_id) == 3
    assert all(sessions.validate(t) is None for t in mine)
    assert sessions.validate(theirs) is not None


def test_password_change_revokes_older_sessions(sessions, credentials, principal_id):
    version = credentials.get_by_id(principal_id).credential_version
    token = sessions.create(principal_id, "operator", version)
    credentials.set_password(principal_id, "brand-new-pass")
    assert sessions.validate(token) is None
    assert sessions.status(token) is SessionStatus.REVOKED
    fresh = sessions.create(principal_id, "operator", credentials.get_by_id(principal_id).credential_version)
    assert sessions.validate(fresh) is not None


def test_create_stamps_current_credential_version(sessions, credentials, principal_id):
    credentials.set_password(principal_id, "brand-new-pass")
    credentials.set_role(principal_id, "operator")
    assert credentials.get_by_id(principal_id).credential_version > 1
    token = sessions.create(principal_id, "operator")
    assert sessions.status(token) is SessionStatus.VALID
    assert sessions.validate(token) is not None


def test_deactivation_revokes_sessions(sessions, credentials, principal_id):
    token = sessions.create(principal_id, "operator", 1)
    credentials.deactivate(principal_id)
    assert sessions.validate(token) is None
    assert sessions.status(token) is SessionStatus.REVOKED


def test_session_for_missing_principal_is_revoked(sessions):
    token = sessions.create(9999, "operator")
    assert sessions.validate(token) is None
    assert sessions.status(token) is SessionStatus.REVOKED


def test_role_is_snapshotted_at_creation(sessions, principal_id):
    token = sessions.create(principal_id, "operator")
    assert sessions.validate(token).role == "operator"


def test_storage_failure_fails_closed(sessions, principal_id):
    token = sessions.create(principal_id, "operator")
    with patch.object(sessions, "_lookup", side_effect=StorageUnavailable("down")):
        assert sessions.validate(token) is None


def test_failed_activity_touch_does_not_reject(sessions, principal_id, db):
    token = sessions.create(principal_id, "operator")
    with patch.object(db, "begin", side_effect=StorageUnavailable("write lock timeout")):
        assert sessions.validate(token) is not None


def test_purge_expired(sessions, principal_id, clock):
    sessions.create(principal_id, "operator")
    clock.advance(hours=12)
    live = sessions.create(principal_id, "operator")
    clock.advance(hours=13)
    assert sessions.purge_expired() == 1
    assert sessions.validate(live) is not None
