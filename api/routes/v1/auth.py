"""
api/routes/v1/auth.py -- Login, OTP, logout and password endpoints.

Routes:
  POST /api/v1/auth/login     -- password or OTP login; sets session cookie
  POST /api/v1/auth/otp       -- issue a one-time code for out-of-band delivery (202)
  POST /api/v1/auth/logout    -- destroys the session and clears the cookie
  GET  /api/v1/auth/me        -- current session info (requires auth)
  POST /api/v1/auth/password  -- change own password, rotates the session (requires auth)

Security:
  [H2] /login and /otp are rate-limited per IP (LOGIN_RATE_LIMIT, OTP_RATE_LIMIT).
  [C1] Password checks go through AuthFacade.login(), which runs the
       timing-equalized CredentialStore path. Never inline a bcrypt check here.
  [M5] Cache-Control: no-store on every response that carries a token.
  Enumeration: /login answers every credential failure with the same body,
       and /otp answers 202 with the same body whether or not the identifier
       belongs to a principal. The plaintext code is never part of a response.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    OtpRequest,
    OtpRequestedResponse,
    PasswordChangedResponse,
    PasswordChangeRequest,
)
from auth.dependencies import (
    SESSION_COOKIE,
    auth_http_error,
    get_current_session,
    get_facade,
    get_token,
    request_origin,
)
from auth.errors import AuthError, AuthErrorCode
from auth.models import AuditAction, AuditEvent, SessionInfo
from auth.permissions import CATALOG, SUPERUSER_ROLE
from core.config import get_settings

logger = logging.getLogger("authcore.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/otp:      public -- code request precedes authentication
# - POST /api/v1/auth/logout:   public -- destroying an unknown token is a no-op
# - GET  /api/v1/auth/me:       requires auth (get_current_session)
# - POST /api/v1/auth/password: requires auth (session token checked by the facade)
router = APIRouter()


def _set_session_cookie(request: Request, response: Response, token: str) -> None:
    """Write the session token as an httpOnly cookie.

    max_age matches the session TTL so cookie and server-side session expire
    together; the server-side expiry is authoritative either way.
    """
    settings = request.app.state.settings
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_ttl_seconds,
    )


def _error_response(error: AuthError, status_code: int) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content={"error": {"code": error.code.value, "message": error.message}},
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(lambda: get_settings().login_rate_limit)  # [H2] must be ABOVE @router
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with a password or a one-time code; set the session cookie.

    Every credential failure (unknown identifier, wrong password, bad or used
    code, inactive principal) returns the same 401 body.
    """
    facade = get_facade(request)
    result = facade.login(body.identifier, body.secret, body.method, request_origin(request))
    if isinstance(result, AuthError):
        status = 503 if result.code is AuthErrorCode.STORAGE_UNAVAILABLE else 401
        return _error_response(result, status)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            session_id=result.session_id,
            expires_at=result.expires_at,
            expires_in=request.app.state.settings.session_ttl_seconds,
            principal_id=result.principal_id,
            role=result.role,
            must_change_password=result.must_change_password,
        ).model_dump(mode="json"),
    )
    _set_session_cookie(request, resp, result.session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(lambda: get_settings().otp_rate_limit)  # [H2]
@router.post("/auth/otp", response_model=OtpRequestedResponse, status_code=202)
def request_otp(request: Request, body: OtpRequest) -> OtpRequestedResponse:
    """Issue a one-time code and hand it to the configured sender.

    The sender (app.state.otp_sender) owns delivery. A delivery failure is
    logged and audited but does not change the response.
    """
    facade = get_facade(request)
    origin = request_origin(request)
    issued = facade.request_otp(body.identifier, origin)
    if isinstance(issued, AuthError):
        raise auth_http_error(issued)

    sent = True
    try:
        request.app.state.otp_sender(body.identifier.strip().lower(), issued)
    except Exception:
        sent = False
        logger.exception("OTP delivery failed")
    facade.audit(
        AuditEvent(
            action=AuditAction.OTP_SENT,
            success=sent,
            actor_identifier=body.identifier.strip().lower(),
            error_message=None if sent else "delivery_failed",
            ip=origin.ip,
            user_agent=origin.user_agent,
        )
    )
    return OtpRequestedResponse(expires_in=request.app.state.settings.otp_ttl_seconds)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Destroy the current session (if any) and clear the cookie."""
    token = get_token(request)
    if token:
        failed = get_facade(request).logout(token, request_origin(request))
        if failed is not None:
            raise auth_http_error(failed)
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, session: SessionInfo = Depends(get_current_session)) -> MeResponse:
    """Return identity and effective permissions for the current session."""
    if session.role == SUPERUSER_ROLE:
        codes = [p.code.value for p in CATALOG]
    else:
        codes = sorted(p.value for p in get_facade(request).permissions.permissions_for(session.role))
    return MeResponse(
        principal_id=session.principal_id,
        identifier=session.identifier,
        role=session.role,
        permissions=codes,
        active_tenant_id=session.active_tenant_id,
        expires_at=session.expires_at,
        last_activity=session.last_activity,
    )


@router.post("/auth/password", response_model=PasswordChangedResponse)
def change_password(request: Request, body: PasswordChangeRequest) -> JSONResponse:
    """Change the caller's password.

    All of the caller's sessions end, including the one making this request;
    the response carries (and sets as cookie) a fresh session token.
    """
    token = get_token(request)
    if not token:
        raise auth_http_error(AuthError.of(AuthErrorCode.SESSION_NOT_FOUND))
    result = get_facade(request).change_password(
        token, body.current_password, body.new_password, request_origin(request)
    )
    if isinstance(result, AuthError):
        raise auth_http_error(result)
    if not result.ok:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_password", "message": result.error},
        )
    resp = JSONResponse(content=PasswordChangedResponse(session_id=result.session_id).model_dump())
    _set_session_cookie(request, resp, result.session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
