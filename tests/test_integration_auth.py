"""Integration tests for the HTTP auth flow.

Covers:
- Registration and login
- Refresh rotation and replay detection
- Logout, targeted revocation and revoke-all across devices
- Rate limiting
- One-time code login
- Tenant admin session management and audit export
- Error envelopes and health
"""

import pytest
from fastapi.testclient import TestClient

from tablesession import app as app_module
from tablesession.service.runtime import get_runtime

PHONE = {
    "User-Agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)",
    "Accept-Language": "en-US",
    "Accept-Encoding": "gzip, br",
}
LAPTOP = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
    "Accept-Language": "de-DE",
    "Accept-Encoding": "gzip",
}


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def email():
    return "diner@example.com"


def _register(client, email, password, *, headers=None, **extra):
    body = {"email": email, "password": password, "name": "Dana Diner", **extra}
    return client.post("/v1/auth/register", json=body, headers=headers or PHONE)


def _login(client, email, password, *, headers=None, **extra):
    body = {"email": email, "password": password, **extra}
    return client.post("/v1/auth/login", json=body, headers=headers or PHONE)


def _refresh(client, token, *, headers=None):
    return client.post(
        "/v1/auth/refresh", json={"refreshToken": token}, headers=headers or PHONE
    )


def _bearer(token, device=None):
    return {**(device or PHONE), "Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_user_and_session(self, client, email, password):
        response = _register(client, email, password)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["email"] == email
        assert data["user"]["role"] == "customer"
        assert data["user"]["tenantId"] == "public"
        assert data["accessToken"] and data["refreshToken"]
        assert data["expiresIn"] == 15 * 60
        assert "refresh_token" in response.cookies

    def test_duplicate_email_conflicts(self, client, email, password):
        _register(client, email, password)
        response = _register(client, email, password)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_weak_password_rejected(self, client, email):
        response = _register(client, email, "password")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "password"

    def test_invalid_email_rejected(self, client, password):
        response = _register(client, "not-an-email", password)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_staff_needs_a_tenant(self, client, email, password):
        response = _register(client, email, password, role="staff")

        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "tenantId"

    def test_registration_is_audited(self, client, email, password):
        _register(client, email, password)
        actions = [e.action for e in get_runtime().store.list_audit_events()]
        assert "USER_REGISTERED" in actions


class TestLogin:
    def test_login_issues_new_family(self, client, email, password):
        registered = _register(client, email, password).json()["data"]
        response = _login(client, email, password)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["sessionId"] != registered["sessionId"]
        runtime = get_runtime()
        first = runtime.codec.decode_refresh(registered["refreshToken"])
        second = runtime.codec.decode_refresh(data["refreshToken"])
        assert first.family_id != second.family_id

    def test_wrong_password_and_unknown_email_look_the_same(self, client, email, password):
        _register(client, email, password)

        wrong = _login(client, email, "WrongPassword1")
        unknown = _login(client, "nobody@example.com", password)

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["code"] == unknown.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_login_in_other_tenant_fails(self, client, email, password):
        _register(client, email, password)
        response = _login(client, email, password, tenantId="elsewhere")
        assert response.status_code == 401

    def test_failed_login_is_audited(self, client, email, password):
        _register(client, email, password)
        _login(client, email, "WrongPassword1")

        events = get_runtime().store.list_audit_events(action="LOGIN_FAILED")
        assert events and events[0].details["reason"] == "bad_password"

    def test_session_cap_evicts_oldest(self, client, email, password):
        _register(client, email, password)
        limit = get_runtime().settings.max_active_sessions
        for _ in range(limit):
            latest = _login(client, email, password).json()["data"]

        sessions = client.get(
            "/v1/auth/sessions", headers=_bearer(latest["accessToken"])
        ).json()["data"]
        assert sessions["totalSessions"] == limit
        assert get_runtime().store.list_audit_events(action="SESSION_LIMIT_EXCEEDED")


class TestRefresh:
    def test_refresh_rotates(self, client, email, password):
        _register(client, email, password)
        tokens = _login(client, email, password).json()["data"]

        response = _refresh(client, tokens["refreshToken"])

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refreshToken"] != tokens["refreshToken"]
        assert data["tokenType"] == "bearer"
        me = client.get("/v1/auth/me", headers=_bearer(data["accessToken"]))
        assert me.status_code == 200

    def test_refresh_from_cookie(self, client, email, password):
        _register(client, email, password)
        _login(client, email, password)

        response = client.post("/v1/auth/refresh", headers=PHONE)

        assert response.status_code == 200
        assert response.json()["data"]["accessToken"]

    def test_missing_token_is_refresh_failed(self, client):
        client.cookies.clear()
        response = client.post("/v1/auth/refresh", json={}, headers=PHONE)

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "REFRESH_FAILED"
        assert error["details"]["code"] == "INVALID_TOKEN"

    def test_garbage_token_reports_specific_code(self, client):
        response = _refresh(client, "garbage")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "REFRESH_FAILED"
        assert error["details"]["code"] == "INVALID_TOKEN"
        assert error["details"]["reason"] == "MALFORMED"

    def test_replay_revokes_session(self, client, email, password):
        """login -> refresh(t0) -> refresh(t0) again -> session gone from the list."""
        _register(client, email, password)
        login = _login(client, email, password).json()["data"]

        first = _refresh(client, login["refreshToken"])
        assert first.status_code == 200

        replay = _refresh(client, login["refreshToken"])
        assert replay.status_code == 403
        assert replay.json()["error"]["code"] == "TOKEN_REUSE_DETECTED"

        laptop = _login(client, email, password, headers=LAPTOP).json()["data"]
        sessions = client.get(
            "/v1/auth/sessions", headers=_bearer(laptop["accessToken"], LAPTOP)
        ).json()["data"]
        assert login["sessionId"] not in [s["id"] for s in sessions["sessions"]]
        stored = get_runtime().store.get_session("public", login["sessionId"])
        assert stored.is_revoked is True

        # The rotated successor is dead too, and its access token is deny-listed
        successor = first.json()["data"]
        dead = _refresh(client, successor["refreshToken"])
        assert dead.status_code == 401
        assert dead.json()["error"]["details"]["code"] == "SESSION_REVOKED"
        me = client.get("/v1/auth/me", headers=_bearer(successor["accessToken"]))
        assert me.status_code == 401

    def test_device_change_is_rejected(self, client, email, password):
        _register(client, email, password)
        login = _login(client, email, password).json()["data"]

        response = _refresh(client, login["refreshToken"], headers=LAPTOP)

        assert response.status_code == 403
        assert response.json()["error"]["details"]["reason"] == "fingerprint_mismatch"


class TestLogoutAndRevoke:
    def test_logout_denylists_access_token(self, client, email, password):
        _register(client, email, password)
        login = _login(client, email, password).json()["data"]
        headers = _bearer(login["accessToken"])
        assert client.get("/v1/auth/me", headers=headers).status_code == 200

        response = client.post("/v1/auth/logout", json={}, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out successfully"
        after = client.get("/v1/auth/me", headers=headers)
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "SESSION_REVOKED"
        assert _refresh(client, login["refreshToken"]).status_code == 401

    def test_logout_kills_access_tokens_minted_before_refresh(self, client, email, password):
        """login (A0) -> refresh (A1) -> logout with A1 -> A0 is rejected too."""
        _register(client, email, password)
        login = _login(client, email, password).json()["data"]
        rotated = _refresh(client, login["refreshToken"]).json()["data"]

        response = client.post(
            "/v1/auth/logout", json={}, headers=_bearer(rotated["accessToken"])
        )

        assert response.status_code == 200
        for token in (login["accessToken"], rotated["accessToken"]):
            after = client.get("/v1/auth/sessions", headers=_bearer(token))
            assert after.status_code == 401
            assert after.json()["error"]["code"] == "SESSION_REVOKED"

    def test_logout_all_keeps_current_device(self, client, email, password):
        """Two devices; logoutAll from the first revokes only the second."""
        _register(client, email, password)
        phone = _login(client, email, password, headers=PHONE).json()["data"]
        laptop = _login(client, email, password, headers=LAPTOP).json()["data"]

        response = client.post(
            "/v1/auth/logout", json={"logoutAll": True}, headers=_bearer(phone["accessToken"])
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Logged out from all devices successfully"
        assert data["currentSessionRevoked"] is False
        assert _refresh(client, laptop["refreshToken"], headers=LAPTOP).status_code == 401
        assert _refresh(client, phone["refreshToken"], headers=PHONE).status_code == 200
        laptop_me = client.get("/v1/auth/me", headers=_bearer(laptop["accessToken"], LAPTOP))
        assert laptop_me.status_code == 401

    def test_revoke_other_device(self, client, email, password):
        _register(client, email, password)
        phone = _login(client, email, password, headers=PHONE).json()["data"]
        laptop = _login(client, email, password, headers=LAPTOP).json()["data"]

        response = client.post(
            "/v1/auth/revoke",
            json={"sessionId": laptop["sessionId"], "reason": "lost laptop"},
            headers=_bearer(phone["accessToken"]),
        )

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 1
        assert response.json()["data"]["currentSessionRevoked"] is False
        stored = get_runtime().store.get_session("public", laptop["sessionId"])
        assert stored.revoked_reason == "lost laptop"
        assert _refresh(client, phone["refreshToken"]).status_code == 200

    def test_revoke_all_includes_current(self, client, email, password):
        _register(client, email, password)
        phone = _login(client, email, password, headers=PHONE).json()["data"]
        _login(client, email, password, headers=LAPTOP)

        response = client.post(
            "/v1/auth/revoke", json={"revokeAll": True}, headers=_bearer(phone["accessToken"])
        )

        assert response.status_code == 200
        assert response.json()["data"]["currentSessionRevoked"] is True
        assert get_runtime().store.list_user_sessions(
            "public", get_runtime().codec.decode_access(phone["accessToken"]).user_id
        ) == []
        assert client.get("/v1/auth/me", headers=_bearer(phone["accessToken"])).status_code == 401

    def test_cannot_revoke_someone_elses_session(self, client, password):
        _register(client, "alice@example.com", password)
        _register(client, "bob@example.com", password)
        alice = _login(client, "alice@example.com", password).json()["data"]
        bob = _login(client, "bob@example.com", password).json()["data"]

        response = client.post(
            "/v1/auth/revoke",
            json={"sessionId": bob["sessionId"]},
            headers=_bearer(alice["accessToken"]),
        )

        assert response.status_code == 404
        assert not get_runtime().store.get_session("public", bob["sessionId"]).is_revoked

    def test_sessions_list_marks_current(self, client, email, password):
        _register(client, email, password)
        phone = _login(client, email, password, headers=PHONE).json()["data"]
        _login(client, email, password, headers=LAPTOP)

        response = client.get("/v1/auth/sessions", headers=_bearer(phone["accessToken"]))

        data = response.json()["data"]
        current = [s for s in data["sessions"] if s["isCurrent"]]
        assert [s["id"] for s in current] == [phone["sessionId"]]
        assert data["currentSessionId"] == phone["sessionId"]
        activity = [s["lastActivity"] for s in data["sessions"]]
        assert activity == sorted(activity, reverse=True)

    def test_missing_bearer_is_invalid_token(self, client):
        response = client.get("/v1/auth/sessions")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"


class TestOtp:
    def test_otp_login_flow(self, client, email, password, otp_outbox):
        registered = _register(client, email, password, phone="+49 151 1234-5678").json()["data"]
        assert registered["user"]["phone"] == "+4915112345678"

        sent = client.post(
            "/v1/auth/otp/send", json={"phone": "+4915112345678", "purpose": "login"}, headers=PHONE
        )
        assert sent.status_code == 200
        assert sent.json()["data"] == {
            "message": "OTP sent successfully",
            "expiresIn": 600,
            "phone": "+49*********78",
        }

        verified = client.post(
            "/v1/auth/otp/verify",
            json={"phone": "+4915112345678", "otp": otp_outbox.last_code, "purpose": "login"},
            headers=PHONE,
        )

        assert verified.status_code == 200
        data = verified.json()["data"]
        assert data["user"]["id"] == registered["user"]["id"]
        assert data["sessionId"] != registered["sessionId"]
        assert "refresh_token" in verified.cookies
        me = client.get("/v1/auth/me", headers=_bearer(data["accessToken"]))
        assert me.status_code == 200
        assert _refresh(client, data["refreshToken"]).status_code == 200

    def test_verification_purpose_returns_no_tokens(self, client, otp_outbox):
        client.post("/v1/auth/otp/send", json={"phone": "+4915112345678"}, headers=PHONE)

        response = client.post(
            "/v1/auth/otp/verify",
            json={"phone": "+4915112345678", "otp": otp_outbox.last_code},
            headers=PHONE,
        )

        assert response.status_code == 200
        assert response.json()["data"] == {
            "message": "OTP verified successfully",
            "phone": "+49*********78",
            "verified": True,
        }

    def test_wrong_code_is_rejected(self, client, otp_outbox):
        client.post("/v1/auth/otp/send", json={"phone": "+4915112345678"}, headers=PHONE)
        wrong = "000000" if otp_outbox.last_code != "000000" else "111111"

        response = client.post(
            "/v1/auth/otp/verify",
            json={"phone": "+4915112345678", "otp": wrong},
            headers=PHONE,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "OTP_VERIFICATION_FAILED"
        assert error["details"]["attempts_remaining"] == 2

    def test_second_send_while_pending_is_rate_limited(self, client, otp_outbox):
        body = {"phone": "+4915112345678"}
        client.post("/v1/auth/otp/send", json=body, headers=PHONE)

        again = client.post("/v1/auth/otp/send", json=body, headers=PHONE)

        assert again.status_code == 429
        assert again.json()["error"]["details"]["reason"] == "otp_pending"
        assert int(again.headers["Retry-After"]) > 0

    def test_send_has_its_own_ip_limit(self, client, otp_outbox):
        limit = get_runtime().settings.otp_send_rate_limit
        headers = {**PHONE, "X-Forwarded-For": "203.0.113.90"}
        statuses = [
            client.post(
                "/v1/auth/otp/send", json={"phone": f"+49151000000{i:02d}"}, headers=headers
            ).status_code
            for i in range(limit + 1)
        ]

        assert statuses == [200] * limit + [429]
        # Login from the same address is unaffected
        assert _login(client, "nobody@example.com", "WrongPassword1", headers=headers).status_code == 401


class TestRateLimits:
    def test_login_blocked_after_limit(self, client, email, password):
        _register(client, email, password)
        limit = get_runtime().settings.login_rate_limit
        headers = {**PHONE, "X-Forwarded-For": "203.0.113.77"}

        remaining = []
        for _ in range(limit):
            response = _login(client, email, password, headers=headers)
            assert response.status_code == 200
            remaining.append(int(response.headers["X-RateLimit-Remaining"]))

        blocked = _login(client, email, password, headers=headers)

        assert remaining == list(range(limit - 1, -1, -1))
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "RATE_LIMITED"
        assert int(blocked.headers["Retry-After"]) >= 1

    def test_wrong_passwords_hit_the_limit(self, client, email, password):
        _register(client, email, password)
        limit = get_runtime().settings.login_rate_limit
        headers = {**PHONE, "X-Forwarded-For": "203.0.113.78"}

        statuses = [
            _login(client, email, "WrongPassword1", headers=headers).status_code
            for _ in range(limit + 1)
        ]

        assert statuses == [401] * limit + [429]

    def test_limits_are_per_client_ip(self, client, email, password):
        _register(client, email, password)
        limit = get_runtime().settings.login_rate_limit
        for _ in range(limit + 1):
            _login(client, email, "WrongPassword1", headers={**PHONE, "X-Forwarded-For": "198.51.100.1"})

        response = _login(client, email, password, headers={**PHONE, "X-Forwarded-For": "198.51.100.2"})
        assert response.status_code == 200


class TestProfileAndAdmin:
    def test_me_reports_permissions(self, client, email, password):
        data = _register(client, email, password).json()["data"]

        response = client.get("/v1/auth/me", headers=_bearer(data["accessToken"]))

        profile = response.json()["data"]
        assert profile["user"]["email"] == email
        assert profile["canAccessAdmin"] is False
        assert "orders:create" in profile["permissions"]
        assert profile["activeSessions"] == 1

    def test_owner_manages_staff_sessions(self, client, password):
        owner = _register(
            client, "owner@bistro.example", password, role="owner", tenantId="bistro"
        ).json()["data"]
        staff = _register(
            client, "cook@bistro.example", password, role="staff", tenantId="bistro",
            headers=LAPTOP,
        ).json()["data"]
        headers = _bearer(owner["accessToken"])
        staff_id = staff["user"]["id"]

        listed = client.get(f"/v1/admin/users/{staff_id}/sessions", headers=headers)
        assert listed.status_code == 200
        assert listed.json()["data"]["totalSessions"] == 1

        revoked = client.post(
            f"/v1/admin/users/{staff_id}/sessions/revoke", json={}, headers=headers
        )
        assert revoked.status_code == 200
        assert revoked.json()["data"]["revoked"] == 1
        assert _refresh(client, staff["refreshToken"], headers=LAPTOP).status_code == 401
        events = get_runtime().store.list_audit_events(action="ADMIN_SESSIONS_REVOKED")
        assert events[0].severity == "HIGH"

    def test_staff_cannot_use_admin_endpoints(self, client, password):
        owner = _register(
            client, "owner@bistro.example", password, role="owner", tenantId="bistro"
        ).json()["data"]
        staff = _register(
            client, "cook@bistro.example", password, role="staff", tenantId="bistro"
        ).json()["data"]

        response = client.get(
            f"/v1/admin/users/{owner['user']['id']}/sessions",
            headers=_bearer(staff["accessToken"]),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_admin_cannot_reach_other_tenants(self, client, password):
        owner = _register(
            client, "owner@bistro.example", password, role="owner", tenantId="bistro"
        ).json()["data"]
        outsider = _register(client, "guest@example.com", password).json()["data"]

        response = client.get(
            f"/v1/admin/users/{outsider['user']['id']}/sessions",
            headers=_bearer(owner["accessToken"]),
        )

        assert response.status_code == 404


class TestAuditExport:
    def _owner_and_staff(self, client, password):
        owner = _register(
            client, "owner@bistro.example", password, role="owner", tenantId="bistro"
        ).json()["data"]
        staff = _register(
            client, "cook@bistro.example", password, role="staff", tenantId="bistro",
            headers=LAPTOP,
        ).json()["data"]
        return owner, staff

    def test_owner_exports_tenant_audit_trail(self, client, password):
        owner, staff = self._owner_and_staff(client, password)
        _register(client, "guest@example.com", password)

        response = client.get("/v1/admin/audit", headers=_bearer(owner["accessToken"]))

        assert response.status_code == 200
        data = response.json()["data"]
        user_ids = {event["userId"] for event in data["events"]}
        assert user_ids == {owner["user"]["id"], staff["user"]["id"]}
        assert data["total"] == len(data["events"]) == 2
        assert {event["action"] for event in data["events"]} == {"USER_REGISTERED"}
        exported = get_runtime().store.list_audit_events(action="AUDIT_LOGS_EXPORTED")
        assert exported[0].tenant_id == "bistro"
        assert exported[0].details["count"] == 2

    def test_filters_by_user_and_severity(self, client, password):
        owner, staff = self._owner_and_staff(client, password)
        _login(client, "cook@bistro.example", "WrongPassword1", tenantId="bistro")

        response = client.get(
            "/v1/admin/audit",
            params={"severity": "MEDIUM", "userId": staff["user"]["id"]},
            headers=_bearer(owner["accessToken"]),
        )

        events = response.json()["data"]["events"]
        assert [event["action"] for event in events] == ["LOGIN_FAILED"]

    def test_manager_cannot_export(self, client, password):
        self._owner_and_staff(client, password)
        manager = _register(
            client, "boss@bistro.example", password, role="manager", tenantId="bistro"
        ).json()["data"]

        response = client.get("/v1/admin/audit", headers=_bearer(manager["accessToken"]))

        assert response.status_code == 403
        assert response.json()["error"]["details"]["required"] == "analytics:export"

    def test_bad_severity_is_rejected(self, client, password):
        owner, _ = self._owner_and_staff(client, password)

        response = client.get(
            "/v1/admin/audit", params={"severity": "LOUD"}, headers=_bearer(owner["accessToken"])
        )

        assert response.status_code == 422


class TestEnvelopeAndHealth:
    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-abc"})

        body = response.json()
        assert body["status"] == "error"
        assert body["request_id"] == "req-abc"
        assert response.headers["X-Request-ID"] == "req-abc"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["checks"]["cache"]["status"] == "not_configured"
