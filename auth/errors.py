"""
auth/errors.py -- Error taxonomy for the authentication core.

Two kinds of failure live here:

  Result values (AuthError): expected outcomes of authentication and
      authorization -- wrong password, expired session, missing permission.
      These are RETURNED to the caller, never raised. Callers branch on
      AuthError.code; end users only ever see AuthError.message, which is
      deliberately generic for credential failures so it cannot be used to
      enumerate identifiers.

  Exceptions: infrastructure faults (StorageUnavailable, AuditWriteFailed) and
      programming/input errors at administrative boundaries (UnknownPermission).
      Security checks catch StorageUnavailable and fail closed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthErrorCode(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED_OR_CONSUMED_TOKEN = "expired_or_consumed_token"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    FORBIDDEN = "forbidden"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    AUDIT_WRITE_FAILED = "audit_write_failed"


_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_CREDENTIAL: "Invalid credentials.",
    AuthErrorCode.EXPIRED_OR_CONSUMED_TOKEN: "Invalid credentials.",
    AuthErrorCode.SESSION_NOT_FOUND: "Authentication required.",
    AuthErrorCode.SESSION_EXPIRED: "Session expired. Please log in again.",
    AuthErrorCode.FORBIDDEN: "You do not have permission to perform this action.",
    AuthErrorCode.STORAGE_UNAVAILABLE: "Service temporarily unavailable. Try again shortly.",
    AuthErrorCode.AUDIT_WRITE_FAILED: "Audit record could not be written.",
}


@dataclass(frozen=True)
class AuthError:
    """A typed authentication/authorization failure returned to the caller."""

    code: AuthErrorCode
    message: str = ""

    @classmethod
    def of(cls, code: AuthErrorCode) -> AuthError:
        return cls(code=code, message=_MESSAGES[code])


class StorageUnavailable(Exception):
    """The storage backend failed or timed out. Transient; callers fail closed."""


class AuditWriteFailed(Exception):
    """An audit event could not be persisted. Never escapes AuditLogger.record()."""


class UnknownPermission(ValueError):
    """A permission code outside the static catalog was supplied."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Unknown permission code: {code!r}")
        self.code = code
