"""
auth/facade.py -- Orchestration of the authentication core.

AuthFacade is the only surface collaborators (HTTP routes, CLI, business
modules) call. It composes the five components and owns the flows:

  Login (password or OTP):
      verify -> SessionManager.create -> audit LOGIN        -> LoginResult
      verify fails                   -> audit LOGIN_FAIL   -> AuthError

  Per protected request:
      SessionManager.validate
        None    -> audit SESSION_INVALID -> AuthError(session_*)
        Session -> PermissionEvaluator.authorize(session.role, code)
                     False -> audit FORBIDDEN -> AuthError(forbidden)
                     True  -> run operation -> audit outcome -> ProtectedResult

Failures are returned as AuthError values. The message on a credential
failure is always the generic one; the specific cause (unknown identifier,
wrong password, expired code...) is only written to the audit record.

Storage faults during a check fail closed: no session, no permission.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Any

from auth.audit import AuditLogger
from auth.credentials import CredentialStore, normalize_identifier
from auth.database import Database
from auth.errors import AuthError, AuthErrorCode, StorageUnavailable, UnknownPermission
from auth.models import (
    AuditAction,
    AuditEvent,
    IssuedOtp,
    LoginMethod,
    LoginResult,
    OperationResult,
    OtpStatus,
    PasswordFailure,
    Principal,
    ProtectedResult,
    RequestOrigin,
    Session,
    SessionInfo,
    SessionStatus,
)
from auth.otp import OtpIssuer
from auth.permissions import SUPERUSER_ROLE, PermissionCode, PermissionEvaluator
from auth.sessions import SessionManager
from core.clock import Clock, to_iso, utc_now
from core.config import Settings

logger = logging.getLogger("authcore.facade")

_NO_ORIGIN = RequestOrigin()


def _to_info(session: Session) -> SessionInfo:
    return SessionInfo(
        principal_id=session.principal_id,
        identifier=session.identifier or "",
        role=session.role,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_activity=session.last_activity,
        active_tenant_id=session.active_tenant_id,
    )


class AuthFacade:
    """Entry point for authentication, session, authorization and audit flows."""

    def __init__(
        self,
        credentials: CredentialStore,
        otp: OtpIssuer,
        sessions: SessionManager,
        permissions: PermissionEvaluator,
        audit_log: AuditLogger,
        clock: Clock = utc_now,
        otp_login_roles: Iterable[str] = ("admin", "operator"),
    ) -> None:
        self.credentials = credentials
        self.otp = otp
        self.sessions = sessions
        self.permissions = permissions
        self.audit_log = audit_log
        self._clock = clock
        self._otp_login_roles = frozenset(otp_login_roles)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        identifier: str,
        secret: str,
        method: LoginMethod | str = LoginMethod.PASSWORD,
        origin: RequestOrigin | None = None,
    ) -> LoginResult | AuthError:
        origin = origin or _NO_ORIGIN
        ident = normalize_identifier(identifier)
        method = LoginMethod(method)
        if method is LoginMethod.OTP:
            return self._login_otp(ident, secret, origin)
        return self._login_password(ident, secret, origin)

    def _login_password(self, ident: str, secret: str, origin: RequestOrigin) -> LoginResult | AuthError:
        check = self.credentials.authenticate(ident, secret)
        if not check.ok:
            self._fail_login(ident, LoginMethod.PASSWORD, check.failure.value, origin, principal=check.principal)
            if check.failure is PasswordFailure.STORAGE_ERROR:
                return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
            return AuthError.of(AuthErrorCode.INVALID_CREDENTIAL)
        return self._start_session(
            check.principal, LoginMethod.PASSWORD, origin, must_change_password=check.must_change_password
        )

    def _login_otp(self, ident: str, code: str, origin: RequestOrigin) -> LoginResult | AuthError:
        if not self.otp.verify(ident, code):
            status = self._otp_status(ident, code)
            self._record(
                AuditAction.OTP_VERIFIED,
                False,
                identifier=ident,
                error_message=status,
                origin=origin,
            )
            self._fail_login(ident, LoginMethod.OTP, status, origin)
            if status in (OtpStatus.EXPIRED.value, OtpStatus.CONSUMED.value, OtpStatus.SUPERSEDED.value):
                return AuthError.of(AuthErrorCode.EXPIRED_OR_CONSUMED_TOKEN)
            return AuthError.of(AuthErrorCode.INVALID_CREDENTIAL)

        self._record(AuditAction.OTP_VERIFIED, True, identifier=ident, origin=origin)
        try:
            principal = self.credentials.get_by_identifier(ident)
        except StorageUnavailable:
            self._fail_login(ident, LoginMethod.OTP, PasswordFailure.STORAGE_ERROR.value, origin)
            return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
        if principal is None:
            reason = PasswordFailure.UNKNOWN_IDENTIFIER.value
        elif not principal.is_active:
            reason = PasswordFailure.INACTIVE.value
        elif principal.role not in self._otp_login_roles:
            reason = "role_not_allowed_for_otp"
        else:
            return self._start_session(principal, LoginMethod.OTP, origin)
        self._fail_login(ident, LoginMethod.OTP, reason, origin, principal=principal)
        return AuthError.of(AuthErrorCode.INVALID_CREDENTIAL)

    def _otp_status(self, ident: str, code: str) -> str:
        try:
            return self.otp.inspect(ident, code).value
        except StorageUnavailable:
            return PasswordFailure.STORAGE_ERROR.value

    def _start_session(
        self,
        principal: Principal,
        method: LoginMethod,
        origin: RequestOrigin,
        must_change_password: bool = False,
    ) -> LoginResult | AuthError:
        issued_at = self._clock()
        try:
            token = self.sessions.create(principal.id, principal.role, principal.credential_version)
        except StorageUnavailable:
            self._fail_login(
                principal.identifier, method, PasswordFailure.STORAGE_ERROR.value, origin, principal=principal
            )
            return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
        try:
            self.credentials.update_last_login(principal.id)
        except StorageUnavailable:
            logger.warning("Could not stamp last_login for principal %s", principal.id)
        self._record(
            AuditAction.LOGIN,
            True,
            principal=principal,
            metadata={"method": method.value, "must_change_password": must_change_password},
            origin=origin,
        )
        return LoginResult(
            session_id=token,
            principal_id=principal.id,
            role=principal.role,
            expires_at=issued_at + timedelta(seconds=self.sessions.ttl_seconds),
            must_change_password=must_change_password,
        )

    def _fail_login(
        self,
        ident: str,
        method: LoginMethod,
        reason: str,
        origin: RequestOrigin,
        principal: Principal | None = None,
    ) -> None:
        logger.info("Login rejected (method=%s)", method.value)
        self._record(
            AuditAction.LOGIN_FAIL,
            False,
            principal=principal,
            identifier=ident,
            role=principal.role if principal is not None else "unknown",
            error_message=reason,
            metadata={"method": method.value},
            origin=origin,
        )

    # ------------------------------------------------------------------
    # OTP issuance
    # ------------------------------------------------------------------

    def request_otp(self, identifier: str, origin: RequestOrigin | None = None) -> IssuedOtp | AuthError:
        """Issue a code for out-of-band delivery.

        Issuance does not depend on whether the identifier belongs to a
        principal, so the response cannot be used to enumerate accounts;
        eligibility is decided at login.
        """
        origin = origin or _NO_ORIGIN
        ident = normalize_identifier(identifier)
        try:
            issued = self.otp.issue(ident)
        except StorageUnavailable:
            self._record(
                AuditAction.OTP_REQUEST, False, identifier=ident, error_message="storage_error", origin=origin
            )
            return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
        self._record(
            AuditAction.OTP_REQUEST,
            True,
            identifier=ident,
            metadata={"expires_at": to_iso(issued.expires_at)},
            origin=origin,
        )
        return issued

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def validate_session(self, token: str) -> SessionInfo | None:
        session = self.sessions.validate(token)
        return _to_info(session) if session is not None else None

    def logout(self, token: str, origin: RequestOrigin | None = None) -> AuthError | None:
        """Destroy the session. Idempotent; a LOGOUT event is recorded only if a live session existed.

        Returns AuthError(storage_unavailable) when the session row could not
        be removed, so the caller does not report a logout that did not happen.
        """
        origin = origin or _NO_ORIGIN
        session = self.sessions.validate(token)
        try:
            self.sessions.destroy(token)
        except StorageUnavailable:
            logger.warning("Logout failed: storage unavailable")
            if session is not None:
                self._record(
                    AuditAction.LOGOUT,
                    False,
                    principal_id=session.principal_id,
                    identifier=session.identifier,
                    role=session.role,
                    error_message="storage_unavailable",
                    origin=origin,
                )
            return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
        if session is not None:
            self._record(
                AuditAction.LOGOUT,
                True,
                principal_id=session.principal_id,
                identifier=session.identifier,
                role=session.role,
                origin=origin,
            )
        return None

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, role: str, code: str | PermissionCode) -> bool:
        return self.permissions.authorize(role, code)

    def authorize_request(
        self,
        token: str,
        code: str | PermissionCode,
        origin: RequestOrigin | None = None,
    ) -> SessionInfo | AuthError:
        """Validate the session behind token and check it holds permission code."""
        origin = origin or _NO_ORIGIN
        code_value = code.value if isinstance(code, PermissionCode) else str(code)
        if not token:
            return AuthError.of(AuthErrorCode.SESSION_NOT_FOUND)
        session = self.sessions.validate(token)
        if session is None:
            try:
                status = self.sessions.status(token)
            except StorageUnavailable:
                self._record(
                    AuditAction.SESSION_INVALID,
                    False,
                    error_message="storage_error",
                    metadata={"permission": code_value},
                    origin=origin,
                )
                return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
            self._record(
                AuditAction.SESSION_INVALID,
                False,
                error_message=status.value,
                metadata={"permission": code_value},
                origin=origin,
            )
            if status in (SessionStatus.EXPIRED, SessionStatus.REVOKED):
                return AuthError.of(AuthErrorCode.SESSION_EXPIRED)
            return AuthError.of(AuthErrorCode.SESSION_NOT_FOUND)

        info = _to_info(session)
        if not self.permissions.authorize(session.role, code):
            self._record(
                AuditAction.FORBIDDEN,
                False,
                principal_id=info.principal_id,
                identifier=info.identifier,
                role=info.role,
                metadata={"permission": code_value},
                origin=origin,
            )
            return AuthError.of(AuthErrorCode.FORBIDDEN)
        return info

    def run_protected(
        self,
        token: str,
        code: str | PermissionCode,
        operation: Callable[[SessionInfo], Any],
        *,
        action: AuditAction = AuditAction.ACTION_OUTCOME,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        origin: RequestOrigin | None = None,
    ) -> ProtectedResult | AuthError:
        """Authorize, run operation(session_info), and audit its outcome.

        If operation raises, a failed outcome is recorded and the exception
        propagates unchanged.
        """
        origin = origin or _NO_ORIGIN
        outcome = self.authorize_request(token, code, origin)
        if isinstance(outcome, AuthError):
            return outcome
        details = dict(metadata or {})
        details.setdefault("permission", code.value if isinstance(code, PermissionCode) else str(code))
        try:
            value = operation(outcome)
        except Exception as exc:
            self._record(
                action,
                False,
                principal_id=outcome.principal_id,
                identifier=outcome.identifier,
                role=outcome.role,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=details,
                error_message=str(exc) or exc.__class__.__name__,
                origin=origin,
            )
            raise
        self._record(
            action,
            True,
            principal_id=outcome.principal_id,
            identifier=outcome.identifier,
            role=outcome.role,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=details,
            origin=origin,
        )
        return ProtectedResult(session=outcome, value=value)

    # ------------------------------------------------------------------
    # Credential administration
    # ------------------------------------------------------------------

    def change_password(
        self,
        token: str,
        current_password: str,
        new_password: str,
        origin: RequestOrigin | None = None,
    ) -> OperationResult | AuthError:
        """Change the caller's password and rotate their session.

        Every existing session of the principal dies (credential version
        bump); a fresh session token is returned in OperationResult.session_id.
        """
        origin = origin or _NO_ORIGIN
        session = self.sessions.validate(token)
        if session is None:
            return AuthError.of(AuthErrorCode.SESSION_NOT_FOUND)
        if not self.credentials.verify_password(session.principal_id, current_password):
            self._record(
                AuditAction.UPDATE_PASSWORD,
                False,
                principal_id=session.principal_id,
                identifier=session.identifier,
                role=session.role,
                error_message="wrong_current_password",
                origin=origin,
            )
            return AuthError.of(AuthErrorCode.INVALID_CREDENTIAL)
        result = self.credentials.set_password(session.principal_id, new_password)
        if not result.ok:
            self._record(
                AuditAction.UPDATE_PASSWORD,
                False,
                principal_id=session.principal_id,
                identifier=session.identifier,
                role=session.role,
                error_message=result.error,
                origin=origin,
            )
            return result
        self._record(
            AuditAction.UPDATE_PASSWORD,
            True,
            principal_id=session.principal_id,
            identifier=session.identifier,
            role=session.role,
            origin=origin,
        )
        # The password is committed; older sessions are already revoked by the version bump.
        try:
            self.sessions.destroy_all(session.principal_id)
            principal = self.credentials.get_by_id(session.principal_id)
            new_token = self.sessions.create(principal.id, principal.role)
        except StorageUnavailable:
            logger.warning(
                "Password changed for principal %s but session rotation failed: storage unavailable",
                session.principal_id,
            )
            return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
        return OperationResult(ok=True, session_id=new_token)

    def issue_temporary_password(
        self,
        actor_token: str,
        principal_id: int,
        origin: RequestOrigin | None = None,
    ) -> OperationResult | AuthError:
        """Reset a principal's password to a temporary one (returned in .secret).

        Needs users.manage. Resetting a superuser's password also needs a
        superuser actor.
        """
        origin = origin or _NO_ORIGIN
        actor = self.authorize_request(actor_token, PermissionCode.USERS_MANAGE, origin)
        if isinstance(actor, AuthError):
            return actor
        try:
            target = self.credentials.get_by_id(principal_id)
        except StorageUnavailable:
            return AuthError.of(AuthErrorCode.STORAGE_UNAVAILABLE)
        if target is not None and target.role == SUPERUSER_ROLE:
            forbidden = self._forbid_unless_superuser(
                actor,
                entity_type="principal",
                entity_id=str(principal_id),
                metadata={"action": AuditAction.GENERATE_TEMP_PASSWORD.value},
                origin=origin,
            )
            if forbidden is not None:
                return forbidden
        temporary = self.credentials.issue_temporary_password(principal_id)
        self._record(
            AuditAction.GENERATE_TEMP_PASSWORD,
            temporary is not None,
            principal_id=actor.principal_id,
            identifier=actor.identifier,
            role=actor.role,
            entity_type="principal",
            entity_id=str(principal_id),
            error_message=None if temporary is not None else "principal_not_found",
            origin=origin,
        )
        if temporary is None:
            return OperationResult(ok=False, error="Principal not found.")
        return OperationResult(ok=True, secret=temporary)

    def set_principal_role(
        self,
        actor_token: str,
        principal_id: int,
        role: str,
        origin: RequestOrigin | None = None,
    ) -> OperationResult | AuthError:
        """Change a principal's role. Superuser only.

        Their existing sessions end (credential version bump).
        """
        return self._administer_principal(
            actor_token,
            principal_id,
            AuditAction.UPDATE_ROLE,
            lambda: self.credentials.set_role(principal_id, role),
            {"role": role},
            origin,
        )

    def deactivate_principal(
        self,
        actor_token: str,
        principal_id: int,
        origin: RequestOrigin | None = None,
    ) -> OperationResult | AuthError:
        """Soft-deactivate a principal. Superuser only."""
        return self._administer_principal(
            actor_token,
            principal_id,
            AuditAction.DEACTIVATE_USER,
            lambda: self.credentials.deactivate(principal_id),
            {},
            origin,
        )

    def _administer_principal(
        self,
        actor_token: str,
        principal_id: int,
        action: AuditAction,
        mutate: Callable[[], bool],
        metadata: dict[str, Any],
        origin: RequestOrigin | None,
    ) -> OperationResult | AuthError:
        origin = origin or _NO_ORIGIN
        actor = self.authorize_request(actor_token, PermissionCode.USERS_MANAGE, origin)
        if isinstance(actor, AuthError):
            return actor
        forbidden = self._forbid_unless_superuser(
            actor,
            entity_type="principal",
            entity_id=str(principal_id),
            metadata={"action": action.value, **metadata},
            origin=origin,
        )
        if forbidden is not None:
            return forbidden
        changed = mutate()
        if changed:
            self.sessions.destroy_all(principal_id)
        self._record(
            action,
            changed,
            principal_id=actor.principal_id,
            identifier=actor.identifier,
            role=actor.role,
            entity_type="principal",
            entity_id=str(principal_id),
            metadata=metadata,
            error_message=None if changed else "principal_not_found",
            origin=origin,
        )
        return OperationResult(ok=changed, error=None if changed else "Principal not found.")

    def _forbid_unless_superuser(
        self,
        actor: SessionInfo,
        *,
        entity_type: str,
        entity_id: str,
        metadata: dict[str, Any],
        origin: RequestOrigin,
    ) -> AuthError | None:
        """Return an audited FORBIDDEN unless actor holds the superuser role."""
        if actor.role == SUPERUSER_ROLE:
            return None
        self._record(
            AuditAction.FORBIDDEN,
            False,
            principal_id=actor.principal_id,
            identifier=actor.identifier,
            role=actor.role,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            origin=origin,
        )
        return AuthError.of(AuthErrorCode.FORBIDDEN)

    def set_role_permissions(
        self,
        actor_token: str,
        role: str,
        codes: Iterable[str | PermissionCode],
        origin: RequestOrigin | None = None,
    ) -> frozenset[PermissionCode] | AuthError:
        """Replace the grant set of role. Only the superuser role may do this.

        Raises UnknownPermission (after auditing the rejection) if any code is
        outside the catalog.
        """
        origin = origin or _NO_ORIGIN
        codes = list(codes)
        actor = self.authorize_request(actor_token, PermissionCode.USERS_MANAGE, origin)
        if isinstance(actor, AuthError):
            return actor
        raw = [c.value if isinstance(c, PermissionCode) else str(c) for c in codes]
        forbidden = self._forbid_unless_superuser(
            actor, entity_type="role", entity_id=role, metadata={"requested": raw}, origin=origin
        )
        if forbidden is not None:
            return forbidden
        try:
            granted = self.permissions.set_permissions(role, codes)
        except UnknownPermission as exc:
            self._record(
                AuditAction.UPDATE_PERMISSIONS,
                False,
                principal_id=actor.principal_id,
                identifier=actor.identifier,
                role=actor.role,
                entity_type="role",
                entity_id=role,
                metadata={"requested": raw},
                error_message=str(exc),
                origin=origin,
            )
            raise
        self._record(
            AuditAction.UPDATE_PERMISSIONS,
            True,
            principal_id=actor.principal_id,
            identifier=actor.identifier,
            role=actor.role,
            entity_type="role",
            entity_id=role,
            metadata={"permissions": sorted(p.value for p in granted)},
            origin=origin,
        )
        return granted

    # ------------------------------------------------------------------
    # Audit and housekeeping
    # ------------------------------------------------------------------

    def audit(self, event: AuditEvent) -> None:
        """Fire-and-forget passthrough for collaborators' business events."""
        self.audit_log.record(event)

    def purge_expired(self, otp_retention_seconds: int) -> tuple[int, int]:
        """Reaper pass: (sessions removed, OTP tokens removed)."""
        return self.sessions.purge_expired(), self.otp.purge_expired(otp_retention_seconds)

    def _record(
        self,
        action: AuditAction,
        success: bool,
        *,
        principal: Principal | None = None,
        principal_id: int | None = None,
        identifier: str | None = None,
        role: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_message: str | None = None,
        origin: RequestOrigin = _NO_ORIGIN,
    ) -> None:
        if principal is not None:
            principal_id = principal_id if principal_id is not None else principal.id
            identifier = identifier or principal.identifier
            role = role or principal.role
        self.audit_log.record(
            AuditEvent(
                action=action,
                success=success,
                actor_principal_id=principal_id,
                actor_identifier=identifier,
                role=role,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata or {},
                error_message=error_message,
                ip=origin.ip,
                user_agent=origin.user_agent,
            )
        )


def build_auth_facade(
    settings: Settings,
    database: Database | None = None,
    clock: Clock = utc_now,
    bcrypt_rounds: int = 12,
) -> AuthFacade:
    """Wire every component from settings around one shared Database."""
    db = database or Database(settings.database_url, timeout=settings.storage_timeout_seconds)
    return AuthFacade(
        credentials=CredentialStore(
            db,
            clock=clock,
            rounds=bcrypt_rounds,
            min_length=settings.password_min_length,
            temp_password_ttl_seconds=settings.temp_password_ttl_seconds,
        ),
        otp=OtpIssuer(
            db,
            secret_key=settings.secret_key,
            clock=clock,
            ttl_seconds=settings.otp_ttl_seconds,
            length=settings.otp_length,
            alphabet=settings.otp_alphabet,
        ),
        sessions=SessionManager(db, secret_key=settings.secret_key, clock=clock, ttl_seconds=settings.session_ttl_seconds),
        permissions=PermissionEvaluator(db),
        audit_log=AuditLogger(
            db,
            clock=clock,
            page_size=settings.audit_page_size,
            max_page_size=settings.audit_max_page_size,
        ),
        clock=clock,
        otp_login_roles=settings.otp_login_roles,
    )
