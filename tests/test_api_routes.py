"""
tests/test_api_routes.py -- Integration tests for the auth and admin API routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> AuthFacade -> SQLite -> response model serialization. Unit testing
individual route functions would miss middleware, dependency injection, and
response model validation -- integration tests are the right tool here.

Coverage:
  - Login: password and OTP, cookie + bearer, generic 401 body, no-store
  - OTP request: 202 for known and unknown identifiers, code only in the outbox
  - /me, /logout, /password (session rotation)
  - Admin: catalog, role permissions (superuser-only write), principal patch,
    temporary password, audit list and CSV export
  - Denials: 401 without a token, 403 for a role without the permission

Fixtures used (from conftest.py):
  - api: ApiHarness(client, facade, outbox) with admin / operator / client_user
    principals already created.
"""

from __future__ import annotations

import csv
import io
from unittest.mock import patch

from auth.errors import StorageUnavailable
from auth.models import AuditAction, AuditFilter

LOGIN = "/api/v1/auth/login"


def _audit_actions(api) -> list[str]:
    return [e.action.value for e in api.facade.audit_log.query(AuditFilter(ascending=True))]


class TestLogin:
    def test_password_login_sets_cookie_and_returns_token(self, api) -> None:
        resp = api.client.post(LOGIN, json={"identifier": "ops@example.com", "secret": "ops-pass-1"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["role"] == "operator"
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 24 * 60 * 60
        assert data["must_change_password"] is False
        assert resp.cookies.get("session_id") == data["session_id"]
        assert resp.headers["Cache-Control"] == "no-store"

        # The cookie alone authenticates follow-up requests.
        me = api.client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["identifier"] == "ops@example.com"

    def test_wrong_password_and_unknown_identifier_look_identical(self, api) -> None:
        wrong = api.client.post(LOGIN, json={"identifier": "ops@example.com", "secret": "nope"})
        ghost = api.client.post(LOGIN, json={"identifier": "ghost@example.com", "secret": "nope"})
        assert wrong.status_code == ghost.status_code == 401
        assert wrong.json() == ghost.json()
        assert wrong.json()["error"]["code"] == "invalid_credential"
        assert "session_id" not in wrong.cookies

    def test_failure_reason_is_audited(self, api) -> None:
        api.client.post(LOGIN, json={"identifier": "ops@example.com", "secret": "nope"})
        [event] = api.facade.audit_log.query(AuditFilter(action=AuditAction.LOGIN_FAIL))
        assert event.error_message == "wrong_password"
        assert event.ip == "testclient"

    def test_invalid_method_is_422(self, api) -> None:
        resp = api.client.post(LOGIN, json={"identifier": "ops@example.com", "secret": "x", "method": "sms"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestOtpFlow:
    def test_request_then_login_once(self, api) -> None:
        resp = api.client.post("/api/v1/auth/otp", json={"identifier": "  OPS@example.com"})
        assert resp.status_code == 202
        assert resp.json()["expires_in"] == 15 * 60
        [(identifier, issued)] = api.outbox
        assert identifier == "ops@example.com"
        assert issued.code not in resp.text

        token = api.login("ops@example.com", issued.code, method="otp")
        me = api.client.get("/api/v1/auth/me", headers=api.bearer(token))
        assert me.status_code == 200

        reuse = api.client.post(
            LOGIN, json={"identifier": "ops@example.com", "secret": issued.code, "method": "otp"}
        )
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "expired_or_consumed_token"
        assert {"OTP_REQUEST", "OTP_SENT", "OTP_VERIFIED", "LOGIN"} <= set(_audit_actions(api))

    def test_unknown_identifier_gets_same_response(self, api) -> None:
        known = api.client.post("/api/v1/auth/otp", json={"identifier": "ops@example.com"})
        unknown = api.client.post("/api/v1/auth/otp", json={"identifier": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 202
        assert known.json() == unknown.json()

    def test_delivery_failure_is_audited_not_surfaced(self, api) -> None:
        def broken_sender(identifier, issued):
            raise ConnectionError("smtp down")

        api.client.app.state.otp_sender = broken_sender
        resp = api.client.post("/api/v1/auth/otp", json={"identifier": "ops@example.com"})
        assert resp.status_code == 202
        [event] = api.facade.audit_log.query(AuditFilter(action=AuditAction.OTP_SENT))
        assert event.success is False
        assert event.error_message == "delivery_failed"

    def test_client_user_cannot_use_otp(self, api) -> None:
        api.client.post("/api/v1/auth/otp", json={"identifier": "client@example.com"})
        [(_, issued)] = api.outbox
        resp = api.client.post(
            LOGIN, json={"identifier": "client@example.com", "secret": issued.code, "method": "otp"}
        )
        assert resp.status_code == 401


class TestSessionRoutes:
    def test_me_requires_auth(self, api) -> None:
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_not_found"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_me_lists_role_permissions(self, api) -> None:
        token = api.login("client@example.com", "client-pass-1")
        data = api.client.get("/api/v1/auth/me", headers=api.bearer(token)).json()
        assert data["role"] == "client_user"
        assert data["permissions"] == ["admissions.view"]

    def test_me_for_admin_lists_whole_catalog(self, api) -> None:
        token = api.login("admin@example.com", "admin-pass-1")
        data = api.client.get("/api/v1/auth/me", headers=api.bearer(token)).json()
        assert "integrations.eklesia" in data["permissions"]
        assert "users.manage" in data["permissions"]

    def test_logout_kills_session(self, api) -> None:
        token = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.post("/api/v1/auth/logout", headers=api.bearer(token))
        assert resp.status_code == 200
        assert api.client.get("/api/v1/auth/me", headers=api.bearer(token)).status_code == 401
        # Idempotent, and fine without any token at all.
        assert api.client.post("/api/v1/auth/logout", headers=api.bearer(token)).status_code == 200
        assert api.client.post("/api/v1/auth/logout").status_code == 200
        assert _audit_actions(api).count("LOGOUT") == 1

    def test_logout_storage_failure_is_503(self, api) -> None:
        token = api.login("ops@example.com", "ops-pass-1")
        with patch.object(api.facade.sessions, "destroy", side_effect=StorageUnavailable("db locked")):
            resp = api.client.post("/api/v1/auth/logout", headers=api.bearer(token))
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "storage_unavailable"
        assert api.client.get("/api/v1/auth/me", headers=api.bearer(token)).status_code == 200

    def test_password_change_rotates_session(self, api) -> None:
        old = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.post(
            "/api/v1/auth/password",
            json={"current_password": "ops-pass-1", "new_password": "ops-pass-2"},
            headers=api.bearer(old),
        )
        assert resp.status_code == 200
        new = resp.json()["session_id"]
        assert resp.cookies.get("session_id") == new
        api.client.cookies.clear()
        assert api.client.get("/api/v1/auth/me", headers=api.bearer(old)).status_code == 401
        assert api.client.get("/api/v1/auth/me", headers=api.bearer(new)).status_code == 200
        api.login("ops@example.com", "ops-pass-2")

    def test_password_change_rejections(self, api) -> None:
        token = api.login("ops@example.com", "ops-pass-1")
        wrong = api.client.post(
            "/api/v1/auth/password",
            json={"current_password": "guess", "new_password": "ops-pass-2"},
            headers=api.bearer(token),
        )
        assert wrong.status_code == 401
        short = api.client.post(
            "/api/v1/auth/password",
            json={"current_password": "ops-pass-1", "new_password": "abc"},
            headers=api.bearer(token),
        )
        assert short.status_code == 400
        assert short.json()["error"]["code"] == "invalid_password"
        anonymous = api.client.post(
            "/api/v1/auth/password", json={"current_password": "a", "new_password": "bbbbbbbb"}
        )
        assert anonymous.status_code == 401


class TestAdminPermissions:
    def test_catalog(self, api) -> None:
        token = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.get("/api/v1/admin/permissions/catalog", headers=api.bearer(token))
        assert resp.status_code == 200
        codes = {p["code"] for p in resp.json()["permissions"]}
        assert {"admissions.view", "users.manage", "audit.view"} <= codes

    def test_client_is_forbidden_and_audited(self, api) -> None:
        token = api.login("client@example.com", "client-pass-1")
        resp = api.client.get("/api/v1/admin/permissions/catalog", headers=api.bearer(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        [event] = api.facade.audit_log.query(AuditFilter(action=AuditAction.FORBIDDEN))
        assert event.actor_identifier == "client@example.com"
        assert event.metadata == {"permission": "users.view"}

    def test_no_token_is_401(self, api) -> None:
        assert api.client.get("/api/v1/admin/permissions/catalog").status_code == 401
        assert api.client.put("/api/v1/admin/roles/x/permissions", json={"permissions": []}).status_code == 401

    def test_superuser_replaces_role_permissions(self, api) -> None:
        admin = api.login("admin@example.com", "admin-pass-1")
        resp = api.client.put(
            "/api/v1/admin/roles/client_user/permissions",
            json={"permissions": ["admissions.view", "admissions.create"]},
            headers=api.bearer(admin),
        )
        assert resp.status_code == 200
        assert resp.json()["permissions"] == ["admissions.create", "admissions.view"]

        client = api.login("client@example.com", "client-pass-1")
        me = api.client.get("/api/v1/auth/me", headers=api.bearer(client)).json()
        assert me["permissions"] == ["admissions.create", "admissions.view"]

        ops = api.login("ops@example.com", "ops-pass-1")
        read = api.client.get("/api/v1/admin/roles/client_user/permissions", headers=api.bearer(ops))
        assert read.json() == {
            "role": "client_user",
            "superuser": False,
            "permissions": ["admissions.create", "admissions.view"],
        }

    def test_operator_cannot_replace_role_permissions(self, api) -> None:
        ops = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.put(
            "/api/v1/admin/roles/client_user/permissions",
            json={"permissions": ["users.manage"]},
            headers=api.bearer(ops),
        )
        assert resp.status_code == 403
        assert api.facade.permissions.permissions_for("client_user") == {"admissions.view"}

    def test_unknown_code_rejects_whole_update(self, api) -> None:
        admin = api.login("admin@example.com", "admin-pass-1")
        resp = api.client.put(
            "/api/v1/admin/roles/client_user/permissions",
            json={"permissions": ["companies.view", "reports.everything"]},
            headers=api.bearer(admin),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_permission"
        assert api.facade.permissions.permissions_for("client_user") == {"admissions.view"}


class TestAdminPrincipals:
    def _client_id(self, api) -> int:
        return api.facade.credentials.get_by_identifier("client@example.com").id

    def test_temporary_password(self, api) -> None:
        ops = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.post(
            f"/api/v1/admin/principals/{self._client_id(api)}/temporary-password", headers=api.bearer(ops)
        )
        assert resp.status_code == 201
        temporary = resp.json()["temporary_password"]
        login = api.client.post(LOGIN, json={"identifier": "client@example.com", "secret": temporary})
        assert login.status_code == 200
        assert login.json()["must_change_password"] is True

    def test_temporary_password_missing_principal(self, api) -> None:
        ops = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.post("/api/v1/admin/principals/9999/temporary-password", headers=api.bearer(ops))
        assert resp.status_code == 404

    def test_deactivate_ends_sessions(self, api) -> None:
        client = api.login("client@example.com", "client-pass-1")
        admin = api.login("admin@example.com", "admin-pass-1")
        resp = api.client.patch(
            f"/api/v1/admin/principals/{self._client_id(api)}",
            json={"is_active": False},
            headers=api.bearer(admin),
        )
        assert resp.status_code == 200
        assert api.client.get("/api/v1/auth/me", headers=api.bearer(client)).status_code == 401
        relogin = api.client.post(LOGIN, json={"identifier": "client@example.com", "secret": "client-pass-1"})
        assert relogin.status_code == 401

    def test_change_role(self, api) -> None:
        admin = api.login("admin@example.com", "admin-pass-1")
        resp = api.client.patch(
            f"/api/v1/admin/principals/{self._client_id(api)}",
            json={"role": "operator"},
            headers=api.bearer(admin),
        )
        assert resp.status_code == 200
        token = api.login("client@example.com", "client-pass-1")
        assert api.client.get("/api/v1/auth/me", headers=api.bearer(token)).json()["role"] == "operator"

    def test_patch_guards(self, api) -> None:
        ops = api.login("ops@example.com", "ops-pass-1")
        ops_id = api.facade.credentials.get_by_identifier("ops@example.com").id
        cases = [
            (ops_id, {"is_active": False}, "self_deactivation"),
            (self._client_id(api), {}, "no_changes"),
            (self._client_id(api), {"is_active": True}, "unsupported"),
        ]
        for principal_id, body, code in cases:
            resp = api.client.patch(f"/api/v1/admin/principals/{principal_id}", json=body, headers=api.bearer(ops))
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == code

    def test_client_cannot_patch(self, api) -> None:
        client = api.login("client@example.com", "client-pass-1")
        resp = api.client.patch("/api/v1/admin/principals/1", json={"role": "admin"}, headers=api.bearer(client))
        assert resp.status_code == 403

    def test_operator_cannot_escalate(self, api) -> None:
        ops = api.login("ops@example.com", "ops-pass-1")
        ops_id = api.facade.credentials.get_by_identifier("ops@example.com").id
        admin_id = api.facade.credentials.get_by_identifier("admin@example.com").id
        attempts = [
            ("patch", f"/api/v1/admin/principals/{ops_id}", {"role": "admin"}),
            ("patch", f"/api/v1/admin/principals/{admin_id}", {"is_active": False}),
            ("post", f"/api/v1/admin/principals/{admin_id}/temporary-password", None),
        ]
        for method, url, body in attempts:
            resp = getattr(api.client, method)(url, json=body, headers=api.bearer(ops))
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "forbidden"
        assert api.facade.credentials.get_by_id(ops_id).role == "operator"
        assert api.facade.credentials.get_by_id(admin_id).is_active
        me = api.client.get("/api/v1/auth/me", headers=api.bearer(ops))
        assert me.json()["role"] == "operator"


class TestAdminAudit:
    def test_list_with_filters(self, api) -> None:
        api.client.post(LOGIN, json={"identifier": "client@example.com", "secret": "wrong"})
        ops = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.get(
            "/api/v1/admin/audit", params={"action": "LOGIN_FAIL"}, headers=api.bearer(ops)
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["limit"] == 50
        assert [e["actor_identifier"] for e in data["events"]] == ["client@example.com"]
        assert data["events"][0]["success"] is False

    def test_newest_first_and_paged(self, api) -> None:
        ops = api.login("ops@example.com", "ops-pass-1")
        api.login("ops@example.com", "ops-pass-1")
        resp = api.client.get(
            "/api/v1/admin/audit", params={"action": "LOGIN", "limit": 1}, headers=api.bearer(ops)
        )
        events = resp.json()["events"]
        assert len(events) == 1
        assert resp.json()["limit"] == 1

    def test_naive_timestamp_rejected(self, api) -> None:
        ops = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.get(
            "/api/v1/admin/audit", params={"since": "2026-01-01T00:00:00"}, headers=api.bearer(ops)
        )
        assert resp.status_code == 422

    def test_client_cannot_read_audit(self, api) -> None:
        client = api.login("client@example.com", "client-pass-1")
        assert api.client.get("/api/v1/admin/audit", headers=api.bearer(client)).status_code == 403
        assert api.client.get("/api/v1/admin/audit/export", headers=api.bearer(client)).status_code == 403

    def test_csv_export(self, api) -> None:
        api.client.post(LOGIN, json={"identifier": "=cmd|'/C calc'!A0", "secret": "x"})
        ops = api.login("ops@example.com", "ops-pass-1")
        resp = api.client.get(
            "/api/v1/admin/audit/export", params={"action": "LOGIN_FAIL"}, headers=api.bearer(ops)
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "attachment" in resp.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(resp.text)))
        assert len(rows) == 1
        assert rows[0]["actor_identifier"].startswith("\t=")
        [export] = api.facade.audit_log.query(AuditFilter(entity_type="audit_export"))
        assert export.success
        assert export.actor_identifier == "ops@example.com"
