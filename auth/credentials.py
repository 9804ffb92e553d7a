"""
auth/credentials.py -- Principal persistence and password verification.

Pattern: Repository + Data Mapper. CredentialStore is the repository for the
principals table; _row_to_principal is the mapper. Nothing outside this module
touches password hashes.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Its cost factor makes
       offline brute force of a leaked table expensive. bcrypt only looks at
       the first 72 bytes, and bcrypt 5 refuses longer inputs outright, so
       set_password() rejects them instead of silently truncating.

  Timing equalization [C1]: every verification path runs exactly one bcrypt
       check, against the principal's hash or against a dummy hash of the same
       cost when the identifier is unknown, has no password, or the lookup
       failed. Response time therefore does not reveal whether an identifier
       exists.

  Fail closed: a lookup miss, a hashing error and a storage error all read as
       "not verified". Callers only learn the specific reason through
       PasswordCheck.failure, which is meant for the audit trail, never for the
       end user.

  Credential version: every password, role or activation change increments
       principals.credential_version. SessionManager compares it with the
       version stamped on the session, so changing a password revokes every
       session issued before the change.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

import bcrypt
from sqlalchemy.engine import Row

from auth.database import Database, principals
from auth.errors import StorageUnavailable
from auth.models import OperationResult, PasswordCheck, PasswordFailure, Principal
from core.clock import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("authcore.credentials")

_BCRYPT_MAX_BYTES = 72
_DEFAULT_ROUNDS = 12


def normalize_identifier(identifier: str) -> str:
    """Canonical form of a contact identifier: stripped and lower-cased."""
    return identifier.strip().lower()


# ---------------------------------------------------------------------------
# Password hashing (bcrypt)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = _DEFAULT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Principal records and their password hashes.

    Usage:
        store = CredentialStore(db)
        pid = store.create_principal("ops@example.com", role="operator", password="s3cret!")
        store.verify_password(pid, "s3cret!")   # True
    """

    def __init__(
        self,
        db: Database,
        clock: Clock = utc_now,
        rounds: int = _DEFAULT_ROUNDS,
        min_length: int = 6,
        temp_password_ttl_seconds: int = 72 * 60 * 60,
    ) -> None:
        self._db = db
        self._clock = clock
        self._rounds = rounds
        self._min_length = min_length
        self._temp_ttl = temp_password_ttl_seconds
        # Same cost as real hashes so the dummy comparison takes the same time.
        self._dummy_hash = hash_password("authcore_timing_dummy", rounds=rounds)

    # ------------------------------------------------------------------
    # Principal queries
    # ------------------------------------------------------------------

    def create_principal(
        self,
        identifier: str,
        role: str,
        password: str | None = None,
        tenant_id: str | None = None,
        is_active: bool = True,
    ) -> int:
        """Insert a principal and return its id.

        Raises sqlalchemy.exc.IntegrityError if the identifier already exists.
        """
        now = to_iso(self._clock())
        with self._db.begin() as conn:
            result = conn.execute(
                principals.insert().values(
                    identifier=normalize_identifier(identifier),
                    hashed_password=hash_password(password, self._rounds) if password is not None else None,
                    role=role,
                    is_active=is_active,
                    active_tenant_id=tenant_id,
                    credential_version=1,
                    password_temporary=False,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, principal_id: int) -> Principal | None:
        with self._db.connect() as conn:
            row = conn.execute(principals.select().where(principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_identifier(self, identifier: str) -> Principal | None:
        """Look up a principal by identifier (normalized before matching)."""
        with self._db.connect() as conn:
            row = conn.execute(
                principals.select().where(principals.c.identifier == normalize_identifier(identifier))
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_password(self, principal_id: int, plaintext: str) -> bool:
        """Return True only if the principal exists, is active and the password matches."""
        try:
            principal = self.get_by_id(principal_id)
        except StorageUnavailable:
            check_password(plaintext, self._dummy_hash)
            return False
        return self._check(principal, plaintext).ok

    def authenticate(self, identifier: str, plaintext: str) -> PasswordCheck:
        """Verify an identifier/password pair with timing equalization [C1].

        Returns a PasswordCheck whose failure field names the internal reason.
        The principal is included on failure when it exists so the audit record
        can carry the role.
        """
        try:
            principal = self.get_by_identifier(identifier)
        except StorageUnavailable:
            check_password(plaintext, self._dummy_hash)
            return PasswordCheck(principal=None, failure=PasswordFailure.STORAGE_ERROR)
        return self._check(principal, plaintext)

    def _check(self, principal: Principal | None, plaintext: str) -> PasswordCheck:
        if principal is None:
            check_password(plaintext, self._dummy_hash)
            return PasswordCheck(principal=None, failure=PasswordFailure.UNKNOWN_IDENTIFIER)
        if principal.hashed_password is None:
            check_password(plaintext, self._dummy_hash)
            return PasswordCheck(principal=principal, failure=PasswordFailure.NO_PASSWORD)
        if not check_password(plaintext, principal.hashed_password):
            return PasswordCheck(principal=principal, failure=PasswordFailure.WRONG_PASSWORD)
        if not principal.is_active:
            return PasswordCheck(principal=principal, failure=PasswordFailure.INACTIVE)
        if principal.password_temporary:
            expires = principal.temp_password_expires_at
            if expires is not None and self._clock() >= expires:
                return PasswordCheck(principal=principal, failure=PasswordFailure.TEMPORARY_PASSWORD_EXPIRED)
            return PasswordCheck(principal=principal, must_change_password=True)
        return PasswordCheck(principal=principal)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_password(self, principal_id: int, plaintext: str) -> OperationResult:
        """Re-hash and persist a new password, clearing any temporary flag.

        Increments credential_version, which invalidates sessions issued
        before the change.
        """
        if len(plaintext) < self._min_length:
            return OperationResult(ok=False, error=f"Password must be at least {self._min_length} characters.")
        if len(plaintext.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            return OperationResult(ok=False, error=f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")
        updated = self._update(
            principal_id,
            hashed_password=hash_password(plaintext, self._rounds),
            password_temporary=False,
            temp_password_expires_at=None,
        )
        if not updated:
            return OperationResult(ok=False, error="Principal not found.")
        logger.info("Password changed for principal %s", principal_id)
        return OperationResult(ok=True)

    def issue_temporary_password(self, principal_id: int) -> str | None:
        """Replace the password with a random temporary one and return it once.

        The principal must change it on next login; it stops working after
        temp_password_ttl_seconds. Returns None if the principal does not exist.
        """
        temporary = secrets.token_urlsafe(12)
        expires = self._clock() + timedelta(seconds=self._temp_ttl)
        updated = self._update(
            principal_id,
            hashed_password=hash_password(temporary, self._rounds),
            password_temporary=True,
            temp_password_expires_at=to_iso(expires),
        )
        if not updated:
            return None
        logger.info("Temporary password issued for principal %s", principal_id)
        return temporary

    def set_role(self, principal_id: int, role: str) -> bool:
        return self._update(principal_id, role=role)

    def deactivate(self, principal_id: int) -> bool:
        """Soft-deactivate. Principals are never deleted so audit references stay valid."""
        return self._update(principal_id, is_active=False)

    def update_last_login(self, principal_id: int) -> None:
        with self._db.begin() as conn:
            conn.execute(
                principals.update().where(principals.c.id == principal_id).values(last_login=to_iso(self._clock()))
            )

    def _update(self, principal_id: int, **fields) -> bool:
        """Apply a credential-affecting update and bump credential_version."""
        with self._db.begin() as conn:
            result = conn.execute(
                principals.update()
                .where(principals.c.id == principal_id)
                .values(
                    credential_version=principals.c.credential_version + 1,
                    updated_at=to_iso(self._clock()),
                    **fields,
                )
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row: Row) -> Principal:
    return Principal(
        id=row.id,
        identifier=row.identifier,
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        active_tenant_id=row.active_tenant_id,
        credential_version=row.credential_version,
        password_temporary=bool(row.password_temporary),
        temp_password_expires_at=from_iso(row.temp_password_expires_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        last_login=from_iso(row.last_login),
    )
