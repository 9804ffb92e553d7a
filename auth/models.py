"""
auth/models.py -- Domain dataclasses and enums for the authentication core.

Pattern: Data class (pure data container, zero logic). Stores own
persistence, the facade owns orchestration; these types are the shared
vocabulary between them.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LoginMethod(str, Enum):
    PASSWORD = "password"
    OTP = "otp"


class AuditAction(str, Enum):
    """Closed catalog of audit action tags.

    The first block is emitted by this core; the rest are business events that
    collaborators report through AuthFacade.audit().
    """

    # Authentication and session lifecycle
    LOGIN = "LOGIN"
    LOGIN_FAIL = "LOGIN_FAIL"
    LOGOUT = "LOGOUT"
    OTP_REQUEST = "OTP_REQUEST"
    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"
    SESSION_INVALID = "SESSION_INVALID"
    FORBIDDEN = "FORBIDDEN"
    ACTION_OUTCOME = "ACTION_OUTCOME"

    # Credential and access administration
    UPDATE_PASSWORD = "UPDATE_PASSWORD"
    GENERATE_TEMP_PASSWORD = "GENERATE_TEMP_PASSWORD"
    SEND_PASSWORD = "SEND_PASSWORD"
    UPDATE_PERMISSIONS = "UPDATE_PERMISSIONS"
    UPDATE_ROLE = "UPDATE_ROLE"
    DEACTIVATE_USER = "DEACTIVATE_USER"
    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    CREATE_TEAM_USER = "CREATE_TEAM_USER"
    UPDATE_TEAM_USER_STATUS = "UPDATE_TEAM_USER_STATUS"
    DELETE_TEAM_USER = "DELETE_TEAM_USER"

    # Client companies and settings
    CREATE_CLIENT = "CREATE_CLIENT"
    UPDATE_CLIENT = "UPDATE_CLIENT"
    DELETE_CLIENT = "DELETE_CLIENT"
    TOGGLE_CLIENT_STATUS = "TOGGLE_CLIENT_STATUS"
    IMPORT_COMPANIES_CSV = "IMPORT_COMPANIES_CSV"
    UPDATE_SETTINGS = "UPDATE_SETTINGS"

    # Personnel requests
    CREATE_ADMISSION = "CREATE_ADMISSION"
    CREATE_ADMISSION_ERROR = "CREATE_ADMISSION_ERROR"
    SUBMIT_ADMISSION = "SUBMIT_ADMISSION"
    UPDATE_ADMISSION = "UPDATE_ADMISSION"
    CANCEL_ADMISSION = "CANCEL_ADMISSION"
    APPROVE_ADMISSION = "APPROVE_ADMISSION"
    CREATE_DISMISSAL = "CREATE_DISMISSAL"
    UPDATE_DISMISSAL = "UPDATE_DISMISSAL"
    CANCEL_DISMISSAL = "CANCEL_DISMISSAL"
    APPROVE_DISMISSAL = "APPROVE_DISMISSAL"
    CREATE_TRANSFER = "CREATE_TRANSFER"
    UPDATE_TRANSFER = "UPDATE_TRANSFER"
    CANCEL_TRANSFER = "CANCEL_TRANSFER"
    APPROVE_TRANSFER = "APPROVE_TRANSFER"
    CREATE_VACATION = "CREATE_VACATION"
    UPDATE_VACATION = "UPDATE_VACATION"
    CANCEL_VACATION = "CANCEL_VACATION"
    APPROVE_VACATION = "APPROVE_VACATION"
    CREATE_LEAVE = "CREATE_LEAVE"
    UPDATE_LEAVE = "UPDATE_LEAVE"
    CANCEL_LEAVE = "CANCEL_LEAVE"
    APPROVE_LEAVE = "APPROVE_LEAVE"

    # Files and outbound e-mail
    UPLOAD_FILE = "UPLOAD_FILE"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"


class OtpStatus(str, Enum):
    """Why an (identifier, code) pair does or does not verify. Inspection only."""

    VALID = "valid"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    CONSUMED = "consumed"
    SUPERSEDED = "superseded"


class SessionStatus(str, Enum):
    VALID = "valid"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"  # principal deactivated or credentials changed


class PasswordFailure(str, Enum):
    """Internal reason a password check failed. Audit-only, never shown to users."""

    UNKNOWN_IDENTIFIER = "unknown_identifier"
    NO_PASSWORD = "no_password"
    WRONG_PASSWORD = "wrong_password"
    INACTIVE = "inactive"
    TEMPORARY_PASSWORD_EXPIRED = "temporary_password_expired"
    STORAGE_ERROR = "storage_error"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class Principal:
    """An authenticatable identity (human user or service account).

    identifier is the normalized contact address (lower-cased, stripped) used
    for login and OTP delivery. hashed_password is None for OTP-only principals.

    credential_version increments whenever the password, role or active flag
    changes. Sessions stamp the version they were issued under; a mismatch on
    validation means the session predates a credential change and is dead.
    """

    identifier: str
    role: str
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    active_tenant_id: str | None = None
    credential_version: int = 1
    password_temporary: bool = False
    temp_password_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class OtpToken:
    """A stored one-time passcode. The plaintext code is never persisted."""

    identifier: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    id: int | None = None
    consumed_at: datetime | None = None
    consumed_reason: str | None = None  # "verified" | "superseded"


@dataclass
class Session:
    """Server-side proof of authentication.

    token_hash is the HMAC of the opaque bearer token; the token itself exists
    only on the client. role is a snapshot taken at login.
    """

    token_hash: str
    principal_id: int
    role: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    credential_version: int = 1
    # Filled from the owning principal when the session is loaded.
    identifier: str | None = None
    active_tenant_id: str | None = None


@dataclass(frozen=True)
class SessionInfo:
    """What collaborators see about a validated session."""

    principal_id: int
    identifier: str
    role: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    active_tenant_id: str | None = None


@dataclass(frozen=True)
class RequestOrigin:
    ip: str | None = None
    user_agent: str | None = None


@dataclass
class AuditEvent:
    """An immutable audit record. id and timestamp are assigned on write."""

    action: AuditAction
    success: bool
    actor_principal_id: int | None = None
    actor_identifier: str | None = None
    role: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    id: str | None = None
    timestamp: datetime | None = None


@dataclass
class AuditFilter:
    """Query parameters for AuditLogger.query(). All criteria are ANDed."""

    actor_principal_id: int | None = None
    actor_identifier: str | None = None
    action: AuditAction | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    success: bool | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None
    offset: int = 0
    ascending: bool = False


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordCheck:
    """Outcome of CredentialStore.authenticate()."""

    principal: Principal | None
    failure: PasswordFailure | None = None
    must_change_password: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None and self.principal is not None


@dataclass(frozen=True)
class IssuedOtp:
    """A freshly issued code, returned once for out-of-band delivery."""

    code: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"IssuedOtp(code='***', expires_at={self.expires_at!r})"


@dataclass(frozen=True)
class LoginResult:
    session_id: str
    principal_id: int
    role: str
    expires_at: datetime
    must_change_password: bool = False

    def __repr__(self) -> str:
        return (
            f"LoginResult(session_id='***', principal_id={self.principal_id!r}, "
            f"role={self.role!r}, expires_at={self.expires_at!r}, "
            f"must_change_password={self.must_change_password!r})"
        )


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an administrative mutation (set_password and friends)."""

    ok: bool
    error: str | None = None
    # Secrets handed back once (fresh session token, temporary password).
    session_id: str | None = field(default=None, repr=False)
    secret: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class ProtectedResult:
    session: SessionInfo
    value: Any = None
