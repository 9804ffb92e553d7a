"""
auth/sessions.py -- Opaque server-side session tokens.

Security design decisions:
  Tokens: secrets.token_urlsafe(32), 256 bits of entropy. Only
       HMAC-SHA256(SECRET_KEY, token) is stored (same approach as hashed API
       keys), so a copy of the sessions table cannot be replayed as cookies.

  Expiry: fixed absolute TTL from creation. validate() touches last_activity
       but never moves expires_at, so a token stolen today still dies on
       schedule. Expiry is lazy: an expired row is simply ignored until the
       reaper (purge_expired) removes it.

  Revocation: sessions stamp the principal's credential_version at issue.
       validate() joins the principal and rejects the session if the version
       moved (password/role change) or the principal was deactivated.

  Role snapshot: the role captured at login is what authorization uses for
       the life of the session. A role change bumps credential_version, which
       ends existing sessions rather than silently re-reading the role.

  last_activity writes are advisory: a lost or failed touch is logged and
       does not affect the validation result.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from sqlalchemy import select

from auth.database import Database, principals, sessions
from auth.errors import StorageUnavailable
from auth.models import Session, SessionStatus
from core.clock import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("authcore.sessions")


class SessionManager:
    """Creates, validates and destroys sessions.

    Usage:
        manager = SessionManager(db, secret_key=settings.secret_key)
        token = manager.create(principal_id=7, role="operator")
        session = manager.validate(token)   # Session or None
        manager.destroy(token)
    """

    def __init__(
        self,
        db: Database,
        secret_key: str,
        clock: Clock = utc_now,
        ttl_seconds: int = 24 * 60 * 60,
    ) -> None:
        self._db = db
        self._key = secret_key.encode("utf-8")
        self._clock = clock
        self._ttl = timedelta(seconds=ttl_seconds)

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def hash_token(self, token: str) -> str:
        return hmac.new(self._key, token.encode("utf-8"), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, principal_id: int, role: str, credential_version: int | None = None) -> str:
        """Persist a new session and return the opaque bearer token.

        Without an explicit credential_version the principal's current one is
        read in the same transaction, so the session is live on arrival. A
        missing principal gets version 1 and validates as REVOKED.
        """
        token = secrets.token_urlsafe(32)
        now = self._clock()
        with self._db.begin() as conn:
            if credential_version is None:
                current = conn.execute(
                    select(principals.c.credential_version).where(principals.c.id == principal_id)
                ).scalar_one_or_none()
                credential_version = current if current is not None else 1
            conn.execute(
                sessions.insert().values(
                    token_hash=self.hash_token(token),
                    principal_id=principal_id,
                    role=role,
                    credential_version=credential_version,
                    created_at=to_iso(now),
                    expires_at=to_iso(now + self._ttl),
                    last_activity=to_iso(now),
                )
            )
        logger.info("Session created for principal %s", principal_id)
        return token

    def validate(self, token: str) -> Session | None:
        """Return the live session for token, touching last_activity; None otherwise.

        Storage failures fail closed (None).
        """
        try:
            session, status = self._lookup(token)
        except StorageUnavailable:
            logger.warning("Session validation failed closed: storage unavailable")
            return None
        if status is not SessionStatus.VALID:
            return None
        now = self._clock()
        try:
            with self._db.begin() as conn:
                conn.execute(
                    sessions.update()
                    .where(sessions.c.token_hash == session.token_hash)
                    .values(last_activity=to_iso(now))
                )
            session.last_activity = now
        except StorageUnavailable:
            logger.warning("Could not record session activity for principal %s", session.principal_id)
        return session

    def status(self, token: str) -> SessionStatus:
        """Classify token without side effects. Used to explain rejections in the audit trail."""
        _, status = self._lookup(token)
        return status

    def destroy(self, token: str) -> None:
        """Delete the session. Idempotent."""
        if not token:
            return
        with self._db.begin() as conn:
            conn.execute(sessions.delete().where(sessions.c.token_hash == self.hash_token(token)))

    def destroy_all(self, principal_id: int) -> int:
        """Delete every session of a principal and return how many were removed."""
        with self._db.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.principal_id == principal_id))
        return result.rowcount

    def purge_expired(self) -> int:
        """Reaper: remove sessions past their expiry. Not needed for correctness."""
        with self._db.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at <= to_iso(self._clock())))
        if result.rowcount:
            logger.info("Purged %d expired sessions", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, token: str) -> tuple[Session | None, SessionStatus]:
        if not token:
            return None, SessionStatus.NOT_FOUND
        query = (
            select(
                sessions,
                principals.c.identifier,
                principals.c.active_tenant_id,
                principals.c.is_active.label("principal_active"),
                principals.c.credential_version.label("current_version"),
            )
            .select_from(sessions.outerjoin(principals, sessions.c.principal_id == principals.c.id))
            .where(sessions.c.token_hash == self.hash_token(token))
        )
        with self._db.connect() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            return None, SessionStatus.NOT_FOUND
        session = Session(
            token_hash=row.token_hash,
            principal_id=row.principal_id,
            role=row.role,
            credential_version=row.credential_version,
            created_at=from_iso(row.created_at),
            expires_at=from_iso(row.expires_at),
            last_activity=from_iso(row.last_activity),
            identifier=row.identifier,
            active_tenant_id=row.active_tenant_id,
        )
        if self._clock() >= session.expires_at:
            return session, SessionStatus.EXPIRED
        if row.identifier is None or not row.principal_active or row.current_version != session.credential_version:
            return session, SessionStatus.REVOKED
        return session, SessionStatus.VALID
