"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session token is read from two places, in priority order:
  1. "session_id" cookie -- set by POST /auth/login for browser clients.
  2. Authorization: Bearer <token> header -- API clients and scripts.

Both carry the same opaque token and converge on AuthFacade.

try_get_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_permission(code) builds a dependency that runs the full
authorize_request() flow (audited) and maps AuthError to 401/403/503.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthError, AuthErrorCode
from auth.facade import AuthFacade
from auth.models import RequestOrigin, SessionInfo
from auth.permissions import PermissionCode

SESSION_COOKIE = "session_id"

_STATUS_BY_CODE: dict[AuthErrorCode, int] = {
    AuthErrorCode.INVALID_CREDENTIAL: 401,
    AuthErrorCode.EXPIRED_OR_CONSUMED_TOKEN: 401,
    AuthErrorCode.SESSION_NOT_FOUND: 401,
    AuthErrorCode.SESSION_EXPIRED: 401,
    AuthErrorCode.FORBIDDEN: 403,
    AuthErrorCode.STORAGE_UNAVAILABLE: 503,
    AuthErrorCode.AUDIT_WRITE_FAILED: 503,
}


def get_facade(request: Request) -> AuthFacade:
    return request.app.state.auth


def get_token(request: Request) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def request_origin(request: Request) -> RequestOrigin:
    return RequestOrigin(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def auth_http_error(error: AuthError) -> HTTPException:
    """Translate an AuthError result into the HTTPException the API raises."""
    return HTTPException(
        status_code=_STATUS_BY_CODE[error.code],
        detail={"code": error.code.value, "message": error.message},
    )


def try_get_session(request: Request) -> SessionInfo | None:
    """Validate the request's session token. Never raises.

    Plain validation: no permission check and no audit record. Routes that
    guard an operation should use require_permission() instead.
    """
    token = get_token(request)
    if not token:
        return None
    return get_facade(request).validate_session(token)


def get_current_session(request: Request) -> SessionInfo:
    """Require authentication. Raises HTTP 401 if the request has no live session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionInfo = Depends(get_current_session)): ...
    """
    session = try_get_session(request)
    if session is None:
        raise auth_http_error(AuthError.of(AuthErrorCode.SESSION_NOT_FOUND))
    return session


def require_permission(code: PermissionCode) -> Callable[[Request], SessionInfo]:
    """Build a dependency that requires a live session holding permission code.

    Use as a FastAPI dependency:
        @router.get("/admin/audit")
        async def route(session: SessionInfo = Depends(require_permission(PermissionCode.AUDIT_VIEW))): ...
    """

    def dependency(request: Request) -> SessionInfo:
        token = get_token(request)
        if not token:
            raise auth_http_error(AuthError.of(AuthErrorCode.SESSION_NOT_FOUND))
        outcome = get_facade(request).authorize_request(token, code, request_origin(request))
        if isinstance(outcome, AuthError):
            raise auth_http_error(outcome)
        return outcome

    return dependency
