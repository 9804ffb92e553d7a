"""
API request and response models for authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import LoginMethod

# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    secret is the password for method=password and the one-time code for
    method=otp.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=320)
    secret: str = Field(min_length=1, max_length=256)
    method: LoginMethod = LoginMethod.PASSWORD


class OtpRequest(BaseModel):
    """Request body for POST /api/v1/auth/otp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=320)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class RolePermissionsUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/roles/{role}/permissions.

    Codes are kept as plain strings here so an unknown code reaches the
    catalog check and is reported as such, rather than failing enum parsing.
    """

    permissions: list[str] = Field(default_factory=list, max_length=200)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for a successful login. The token is also set as a cookie."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    token_type: str = "bearer"
    expires_at: datetime
    expires_in: int
    principal_id: int
    role: str
    must_change_password: bool = False


class OtpRequestedResponse(BaseModel):
    """Response for POST /auth/otp. Identical whether or not the identifier exists."""

    model_config = ConfigDict(frozen=True)

    message: str = "If the address is registered, a code has been sent."
    expires_in: int


class MeResponse(BaseModel):
    """Identity information for the current session."""

    model_config = ConfigDict(frozen=True)

    principal_id: int
    identifier: str
    role: str
    permissions: list[str]
    active_tenant_id: Optional[str] = None
    expires_at: datetime
    last_activity: datetime


class PasswordChangedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Password updated."
    session_id: str


class TemporaryPasswordResponse(BaseModel):
    """The temporary password is shown ONCE; it is never retrievable again."""

    model_config = ConfigDict(frozen=True)

    principal_id: int
    temporary_password: str
    expires_in: int


# ---------------------------------------------------------------------------
# Admin -- permissions and audit
# ---------------------------------------------------------------------------


class PermissionInfoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    label: str
    category: str


class CatalogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: int
    permissions: list[PermissionInfoResponse]


class RolePermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    superuser: bool = False
    permissions: list[str]


class AuditEventResponse(BaseModel):
    """One row of the audit trail as returned by GET /admin/audit."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    action: str
    success: bool
    actor_principal_id: Optional[int] = None
    actor_identifier: Optional[str] = None
    role: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    error_message: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class AuditPageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    events: list[AuditEventResponse]
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Shared error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
