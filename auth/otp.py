"""
auth/otp.py -- One-time passcode issuance and single-use verification.

Security design decisions:
  Codes: drawn with secrets.choice from a configurable alphabet (default six
       decimal digits). The plaintext is returned once to the caller for
       out-of-band delivery and is never stored or logged.

  Hashing: HMAC-SHA256(SECRET_KEY, "<identifier>:<code>"). A six-digit space
       is only a million values, so an unkeyed hash of a leaked table would
       fall to a trivial offline search. Keying with the server secret closes
       that, and binding the identifier means identical codes for different
       identifiers never share a hash.

  Single live token: issue() supersedes every unconsumed token for the
       identifier and inserts the new one in ONE transaction. The partial
       unique index on otp_tokens(identifier) WHERE consumed_at IS NULL backs
       this at the storage level: if two issues interleave, one of them hits
       IntegrityError and retries against the now-committed state.

  Single use: verify() is a single conditional UPDATE (compare-and-swap). The
       row only changes if it is still unconsumed, unexpired and matches the
       hash; rowcount tells us whether THIS call won. Two concurrent
       verifications of the same code cannot both see rowcount == 1.

  Expired tokens are left untouched by verify(). inspect() is the separate,
       read-only path that explains a failure for the audit record.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from sqlalchemy import and_
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError

from auth.credentials import normalize_identifier
from auth.database import Database, otp_tokens
from auth.errors import StorageUnavailable
from auth.models import IssuedOtp, OtpStatus, OtpToken
from core.clock import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("authcore.otp")

_REASON_VERIFIED = "verified"
_REASON_SUPERSEDED = "superseded"


class OtpIssuer:
    """Issues and verifies one-time passcodes.

    Usage:
        issuer = OtpIssuer(db, secret_key=settings.secret_key)
        issued = issuer.issue("user@example.com")    # hand issued.code to the mailer
        issuer.verify("user@example.com", "482913")  # True exactly once
    """

    def __init__(
        self,
        db: Database,
        secret_key: str,
        clock: Clock = utc_now,
        ttl_seconds: int = 15 * 60,
        length: int = 6,
        alphabet: str = "0123456789",
        max_issue_attempts: int = 3,
    ) -> None:
        self._db = db
        self._key = secret_key.encode("utf-8")
        self._clock = clock
        self._ttl = timedelta(seconds=ttl_seconds)
        self._length = length
        self._alphabet = alphabet
        self._max_issue_attempts = max_issue_attempts

    def hash_code(self, identifier: str, code: str) -> str:
        message = f"{normalize_identifier(identifier)}:{code}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def generate_code(self) -> str:
        return "".join(secrets.choice(self._alphabet) for _ in range(self._length))

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, identifier: str) -> IssuedOtp:
        """Supersede any unconsumed token for identifier and store a new one.

        Raises StorageUnavailable if storage fails or if concurrent issues
        for the same identifier keep colliding.
        """
        ident = normalize_identifier(identifier)
        code = self.generate_code()
        code_hash = self.hash_code(ident, code)
        for attempt in range(1, self._max_issue_attempts + 1):
            now = self._clock()
            expires = now + self._ttl
            try:
                with self._db.begin() as conn:
                    conn.execute(
                        otp_tokens.update()
                        .where(and_(otp_tokens.c.identifier == ident, otp_tokens.c.consumed_at.is_(None)))
                        .values(consumed_at=to_iso(now), consumed_reason=_REASON_SUPERSEDED)
                    )
                    conn.execute(
                        otp_tokens.insert().values(
                            identifier=ident,
                            code_hash=code_hash,
                            created_at=to_iso(now),
                            expires_at=to_iso(expires),
                        )
                    )
            except IntegrityError:
                logger.info("Concurrent OTP issue collided (attempt %d/%d)", attempt, self._max_issue_attempts)
                continue
            logger.info("OTP issued, expires %s", to_iso(expires))
            return IssuedOtp(code=code, expires_at=expires)
        raise StorageUnavailable("OTP issue kept colliding with concurrent requests")

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, identifier: str, candidate: str) -> bool:
        """Consume the matching live token. True only for the call that consumed it."""
        if not candidate:
            return False
        ident = normalize_identifier(identifier)
        now = to_iso(self._clock())
        try:
            with self._db.begin() as conn:
                result = conn.execute(
                    otp_tokens.update()
                    .where(
                        and_(
                            otp_tokens.c.identifier == ident,
                            otp_tokens.c.code_hash == self.hash_code(ident, candidate),
                            otp_tokens.c.consumed_at.is_(None),
                            otp_tokens.c.expires_at > now,
                        )
                    )
                    .values(consumed_at=now, consumed_reason=_REASON_VERIFIED)
                )
        except StorageUnavailable:
            logger.warning("OTP verification failed closed: storage unavailable")
            return False
        return result.rowcount == 1

    def inspect(self, identifier: str, candidate: str) -> OtpStatus:
        """Explain the state of an (identifier, code) pair without mutating anything."""
        if not candidate:
            return OtpStatus.NOT_FOUND
        ident = normalize_identifier(identifier)
        with self._db.connect() as conn:
            row = conn.execute(
                otp_tokens.select()
                .where(
                    and_(
                        otp_tokens.c.identifier == ident,
                        otp_tokens.c.code_hash == self.hash_code(ident, candidate),
                    )
                )
                .order_by(otp_tokens.c.id.desc())
                .limit(1)
            ).fetchone()
        if row is None:
            return OtpStatus.NOT_FOUND
        token = _row_to_token(row)
        if token.consumed_reason == _REASON_SUPERSEDED:
            return OtpStatus.SUPERSEDED
        if token.consumed_at is not None:
            return OtpStatus.CONSUMED
        if token.expires_at <= self._clock():
            return OtpStatus.EXPIRED
        return OtpStatus.VALID

    def live_tokens(self, identifier: str) -> list[OtpToken]:
        """Return unconsumed, unexpired tokens for identifier (at most one)."""
        now = to_iso(self._clock())
        with self._db.connect() as conn:
            rows = conn.execute(
                otp_tokens.select().where(
                    and_(
                        otp_tokens.c.identifier == normalize_identifier(identifier),
                        otp_tokens.c.consumed_at.is_(None),
                        otp_tokens.c.expires_at > now,
                    )
                )
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, retention_seconds: int) -> int:
        """Delete tokens that expired more than retention_seconds ago."""
        cutoff = to_iso(self._clock() - timedelta(seconds=retention_seconds))
        with self._db.begin() as conn:
            result = conn.execute(otp_tokens.delete().where(otp_tokens.c.expires_at < cutoff))
        if result.rowcount:
            logger.info("Purged %d expired OTP tokens", result.rowcount)
        return result.rowcount


def _row_to_token(row: Row) -> OtpToken:
    return OtpToken(
        id=row.id,
        identifier=row.identifier,
        code_hash=row.code_hash,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        consumed_at=from_iso(row.consumed_at),
        consumed_reason=row.consumed_reason,
    )
