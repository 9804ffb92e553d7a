"""
api/routes/v1/admin.py -- Permission, principal and audit administration.

Routes:
  GET   /api/v1/admin/permissions/catalog                      -- static permission catalog
  GET   /api/v1/admin/roles/{role}/permissions                 -- a role's grant set
  PUT   /api/v1/admin/roles/{role}/permissions                 -- replace a role's grant set (superuser only)
  PATCH /api/v1/admin/principals/{id}                          -- change role / deactivate (superuser only)
  POST  /api/v1/admin/principals/{id}/temporary-password       -- reset to a temporary password
  GET   /api/v1/admin/audit                                    -- filtered, paginated audit trail
  GET   /api/v1/admin/audit/export                             -- same filters, CSV download

Every route goes through require_permission() or the facade's own
authorize_request(), so denials land in the audit trail as FORBIDDEN.

Security:
  [M4] PATCH /principals/{id} blocks self-deactivation.
  CSV export cells are formula-neutralized by AuditLogger.export_csv().
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from api.models import (
    AuditEventResponse,
    AuditPageResponse,
    CatalogResponse,
    PermissionInfoResponse,
    RolePermissionsResponse,
    RolePermissionsUpdate,
    TemporaryPasswordResponse,
)
from auth.dependencies import auth_http_error, get_facade, get_token, request_origin, require_permission
from auth.errors import AuthError, AuthErrorCode, UnknownPermission
from auth.models import AuditAction, AuditFilter, SessionInfo
from auth.permissions import CATALOG, CATALOG_VERSION, SUPERUSER_ROLE, PermissionCode
from core.clock import utc_now

# Auth policy:
# - GET   /admin/permissions/catalog:           users.view
# - GET   /admin/roles/{role}/permissions:      users.view
# - PUT   /admin/roles/{role}/permissions:      users.manage + superuser role (checked by the facade)
# - PATCH /admin/principals/{id}:               users.manage (checked by the facade)
# - POST  /admin/principals/{id}/temporary-password: users.manage (checked by the facade)
# - GET   /admin/audit, /admin/audit/export:    audit.view
router = APIRouter()


class PrincipalPatch(BaseModel):
    """Request body for PATCH /admin/principals/{id}. Reactivation is not supported."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: str | None = Field(default=None, min_length=1, max_length=50)
    is_active: bool | None = None


def _require_token(request: Request) -> str:
    token = get_token(request)
    if not token:
        raise auth_http_error(AuthError.of(AuthErrorCode.SESSION_NOT_FOUND))
    return token


def _audit_filter(
    action: AuditAction | None = Query(default=None),
    actor_principal_id: int | None = Query(default=None),
    actor_identifier: str | None = Query(default=None, max_length=320),
    entity_type: str | None = Query(default=None, max_length=50),
    entity_id: str | None = Query(default=None, max_length=64),
    success: bool | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
) -> AuditFilter:
    for bound in (since, until):
        if bound is not None and bound.tzinfo is None:
            raise HTTPException(
                status_code=422,
                detail={"code": "validation_error", "message": "since/until must include a timezone offset."},
            )
    return AuditFilter(
        actor_principal_id=actor_principal_id,
        actor_identifier=actor_identifier,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/admin/permissions/catalog", response_model=CatalogResponse)
def get_catalog(
    session: SessionInfo = Depends(require_permission(PermissionCode.USERS_VIEW)),
) -> CatalogResponse:
    """Return every permission code the application knows, with UI labels."""
    return CatalogResponse(
        version=CATALOG_VERSION,
        permissions=[
            PermissionInfoResponse(code=p.code.value, label=p.label, category=p.category) for p in CATALOG
        ],
    )


@router.get("/admin/roles/{role}/permissions", response_model=RolePermissionsResponse)
def get_role_permissions(
    request: Request,
    role: str,
    session: SessionInfo = Depends(require_permission(PermissionCode.USERS_VIEW)),
) -> RolePermissionsResponse:
    """Return the stored grant set of a role. Unknown roles have none."""
    granted = get_facade(request).permissions.permissions_for(role)
    return RolePermissionsResponse(
        role=role,
        superuser=role == SUPERUSER_ROLE,
        permissions=sorted(p.value for p in granted),
    )


@router.put("/admin/roles/{role}/permissions", response_model=RolePermissionsResponse)
def put_role_permissions(request: Request, role: str, body: RolePermissionsUpdate) -> RolePermissionsResponse:
    """Replace the grant set of a role in one transaction.

    One unknown code rejects the whole update with 400 and nothing changes.
    """
    try:
        granted = get_facade(request).set_role_permissions(
            _require_token(request), role, body.permissions, request_origin(request)
        )
    except UnknownPermission as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_permission", "message": str(exc)},
        ) from exc
    if isinstance(granted, AuthError):
        raise auth_http_error(granted)
    return RolePermissionsResponse(
        role=role,
        superuser=role == SUPERUSER_ROLE,
        permissions=sorted(p.value for p in granted),
    )


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


@router.patch("/admin/principals/{principal_id}")
def patch_principal(request: Request, principal_id: int, body: PrincipalPatch) -> dict:
    """Change a principal's role and/or deactivate them. Superuser only; their sessions end.

    [M4] An actor cannot deactivate themselves.
    """
    token = _require_token(request)
    facade = get_facade(request)
    origin = request_origin(request)
    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if body.is_active is True:
        raise HTTPException(
            status_code=400,
            detail={"code": "unsupported", "message": "Reactivation is not supported."},
        )
    if body.is_active is False:
        caller = facade.validate_session(token)
        if caller is not None and caller.principal_id == principal_id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        _apply(facade.deactivate_principal(token, principal_id, origin))
    if body.role is not None:
        _apply(facade.set_principal_role(token, principal_id, body.role, origin))
    return {"message": "Principal updated."}


def _apply(result) -> None:
    if isinstance(result, AuthError):
        raise auth_http_error(result)
    if not result.ok:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": result.error},
        )


@router.post(
    "/admin/principals/{principal_id}/temporary-password",
    response_model=TemporaryPasswordResponse,
    status_code=201,
)
def reset_temporary_password(request: Request, principal_id: int) -> TemporaryPasswordResponse:
    """Replace a principal's password with a temporary one. Shown once."""
    result = get_facade(request).issue_temporary_password(
        _require_token(request), principal_id, request_origin(request)
    )
    if isinstance(result, AuthError):
        raise auth_http_error(result)
    if not result.ok:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": result.error},
        )
    return TemporaryPasswordResponse(
        principal_id=principal_id,
        temporary_password=result.secret,
        expires_in=request.app.state.settings.temp_password_ttl_seconds,
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@router.get("/admin/audit", response_model=AuditPageResponse)
def list_audit(
    request: Request,
    criteria: AuditFilter = Depends(_audit_filter),
    session: SessionInfo = Depends(require_permission(PermissionCode.AUDIT_VIEW)),
) -> AuditPageResponse:
    """Return audit events, newest first."""
    settings = request.app.state.settings
    events = get_facade(request).audit_log.query(criteria)
    limit = min(criteria.limit or settings.audit_page_size, settings.audit_max_page_size)
    return AuditPageResponse(
        events=[
            AuditEventResponse(
                id=e.id,
                timestamp=e.timestamp,
                action=e.action.value,
                success=e.success,
                actor_principal_id=e.actor_principal_id,
                actor_identifier=e.actor_identifier,
                role=e.role,
                entity_type=e.entity_type,
                entity_id=e.entity_id,
                metadata=e.metadata,
                error_message=e.error_message,
                ip=e.ip,
                user_agent=e.user_agent,
            )
            for e in events
        ],
        limit=limit,
        offset=criteria.offset,
    )


@router.get("/admin/audit/export")
def export_audit(request: Request, criteria: AuditFilter = Depends(_audit_filter)) -> Response:
    """Download the matching audit events as CSV. The export itself is audited."""
    facade = get_facade(request)
    outcome = facade.run_protected(
        _require_token(request),
        PermissionCode.AUDIT_VIEW,
        lambda session: facade.audit_log.export_csv(criteria),
        entity_type="audit_export",
        origin=request_origin(request),
    )
    if isinstance(outcome, AuthError):
        raise auth_http_error(outcome)
    filename = f"audit-{utc_now():%Y%m%d-%H%M%S}.csv"
    return Response(
        content=outcome.value,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

