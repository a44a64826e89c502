"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth.

Coverage:
  - Login: 200 with token + no-store, 401 bad_credentials for unknown email and
    wrong password alike, 403 with a distinct code for pending, rejected and
    suspended accounts
  - Tokens of suspended accounts stop working on the next request
  - GET/PATCH /auth/me: own profile; role and status are not self-editable
  - POST /auth/signup: pending account + user_signup broadcast, 409 on
    duplicate email, 403 when self-registration is switched off, 422 for
    passwords bcrypt cannot hash

Login sets an access_token cookie on the shared client, and the cookie takes
precedence over Bearer headers, so every test that logs in clears it.
"""

from __future__ import annotations

import pytest

from auth.models import ADMIN, PENDING, REJECTED, SECURITY_TEAM


@pytest.fixture
def client(portal_env):
    yield portal_env.client
    portal_env.client.cookies.clear()


class TestLogin:
    """POST /api/v1/auth/login."""

    def test_login_success(self, portal_env, client) -> None:
        """Valid credentials return a bearer token, set the cookie, and disable caching."""
        user = portal_env.users["admin"]
        resp = client.post("/api/v1/auth/login", json={"email": user.email, "password": portal_env.password})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["user_id"] == user.id
        assert data["role"] == ADMIN
        assert data["access_token"]
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token" in resp.cookies

    def test_login_is_case_insensitive_on_email(self, portal_env, client) -> None:
        user = portal_env.users["member"]
        resp = client.post("/api/v1/auth/login", json={"email": user.email.upper(), "password": portal_env.password})
        assert resp.status_code == 200

    def test_login_stamps_last_login(self, portal_env, client) -> None:
        user = portal_env.users["client"]
        client.post("/api/v1/auth/login", json={"email": user.email, "password": portal_env.password})
        assert portal_env.user_store.get_by_id(user.id).last_login is not None

    def test_wrong_password_and_unknown_email_look_the_same(self, portal_env, client) -> None:
        """Both failures return 401 bad_credentials so emails cannot be enumerated."""
        wrong = client.post(
            "/api/v1/auth/login", json={"email": portal_env.users["admin"].email, "password": "not-the-password"}
        )
        unknown = client.post("/api/v1/auth/login", json={"email": "nobody@nowhere.test", "password": "whatever1"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"

    @pytest.mark.parametrize(
        ("status", "suspended", "code"),
        [
            (PENDING, False, "pending_approval"),
            (REJECTED, False, "rejected"),
            ("approved", True, "suspended"),
        ],
    )
    def test_blocked_accounts_get_distinct_codes(self, portal_env, client, status, suspended, code) -> None:
        email = f"blocked-{code}@example.test"
        portal_env.add_user(code, email, SECURITY_TEAM, status=status, suspended=suspended)
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": portal_env.password})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == code
        assert "access_token" not in resp.cookies


class TestLogout:
    def test_logout_clears_cookie_session(self, portal_env, client) -> None:
        user = portal_env.users["member"]
        client.post("/api/v1/auth/login", json={"email": user.email, "password": portal_env.password})
        assert client.get("/api/v1/auth/me").status_code == 200

        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me").status_code == 401


class TestCurrentUser:
    """GET and PATCH /api/v1/auth/me."""

    def test_me_returns_profile_without_hash(self, portal_env) -> None:
        resp = portal_env.client.get("/api/v1/auth/me", headers=portal_env.headers["client"])
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == portal_env.users["client"].id
        assert data["organization_id"] == portal_env.org_id
        assert "hashed_password" not in data

    def test_me_rejects_garbage_token(self, portal_env) -> None:
        resp = portal_env.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401

    def test_suspension_revokes_existing_token(self, portal_env) -> None:
        """Accounts are re-read on every request, so suspension applies before token expiry."""
        user = portal_env.add_user("soon_suspended", "soon-suspended@example.test", SECURITY_TEAM)
        headers = portal_env.headers["soon_suspended"]
        assert portal_env.client.get("/api/v1/auth/me", headers=headers).status_code == 200
        portal_env.user_store.update_user(user.id, suspended=True)
        assert portal_env.client.get("/api/v1/auth/me", headers=headers).status_code == 401

    def test_update_own_profile(self, portal_env) -> None:
        resp = portal_env.client.patch(
            "/api/v1/auth/me",
            json={"full_name": "Pen Tester", "designation": "Lead"},
            headers=portal_env.headers["member"],
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["full_name"] == "Pen Tester"
        assert resp.json()["designation"] == "Lead"

    def test_cannot_change_own_role(self, portal_env) -> None:
        resp = portal_env.client.patch(
            "/api/v1/auth/me", json={"role": "Super-admin"}, headers=portal_env.headers["member"]
        )
        assert resp.status_code == 422
        assert portal_env.user_store.get_by_id(portal_env.users["member"].id).role == SECURITY_TEAM

    def test_empty_update_is_rejected(self, portal_env) -> None:
        resp = portal_env.client.patch("/api/v1/auth/me", json={}, headers=portal_env.headers["member"])
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"


class TestStaffSignup:
    """POST /api/v1/auth/signup."""

    def test_signup_creates_pending_account_and_broadcast(self, portal_env) -> None:
        resp = portal_env.client.post(
            "/api/v1/auth/signup",
            json={
                "email": "New.Tester@example.test",
                "password": "a-long-password",
                "full_name": "New Tester",
                "role": SECURITY_TEAM,
            },
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["status"] == PENDING
        assert data["email"] == "new.tester@example.test"

        inbox = portal_env.portal_store.list_notifications_for_user(
            portal_env.users["admin"].id, include_broadcast=True
        )
        signups = [n for n in inbox if n.type == "user_signup" and n.payload["user_id"] == data["id"]]
        assert len(signups) == 1
        assert signups[0].user_id is None

    def test_signup_cannot_request_client_or_super_admin(self, portal_env) -> None:
        for role in ("Client", "Super-admin"):
            resp = portal_env.client.post(
                "/api/v1/auth/signup",
                json={"email": f"x-{role}@example.test", "password": "a-long-password", "full_name": "X", "role": role},
            )
            assert resp.status_code == 422

    def test_duplicate_email_conflicts(self, portal_env) -> None:
        resp = portal_env.client.post(
            "/api/v1/auth/signup",
            json={
                "email": portal_env.users["admin"].email,
                "password": "a-long-password",
                "full_name": "Dup",
                "role": ADMIN,
            },
        )
        assert resp.status_code == 409

    def test_signup_disabled_by_app_setting(self, portal_env) -> None:
        portal_env.user_store.update_app_settings(self_registration_enabled=False)
        try:
            resp = portal_env.client.post(
                "/api/v1/auth/signup",
                json={"email": "late@example.test", "password": "a-long-password", "full_name": "Late", "role": ADMIN},
            )
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "registration_disabled"
        finally:
            portal_env.user_store.update_app_settings(self_registration_enabled=True)

    @pytest.mark.parametrize("password", ["x" * 100, "é" * 40])
    def test_password_over_bcrypt_limit_rejected(self, portal_env, password) -> None:
        """bcrypt cannot hash more than 72 bytes, so the request fails validation instead."""
        resp = portal_env.client.post(
            "/api/v1/auth/signup",
            json={"email": "long-pw@example.test", "password": password, "full_name": "Long", "role": ADMIN},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert portal_env.user_store.get_by_email("long-pw@example.test") is None

    def test_long_login_password_is_a_validation_error(self, portal_env) -> None:
        resp = portal_env.client.post(
            "/api/v1/auth/login", json={"email": portal_env.users["admin"].email, "password": "x" * 100}
        )
        assert resp.status_code == 422
