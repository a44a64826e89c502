"""
tests/test_admin_routes.py -- Integration tests for /api/v1/admin.

Coverage:
  - Every route is admin-only; settings need Super-admin
  - approve-user / reject-user for pending accounts and access requests,
    with 409 on repeats and on an email that already has an account
  - Lockout guards: no self-suspension, and the last active Super-admin
    cannot be suspended, rejected or demoted
  - approve-email-access approves a whole organization signup in one call
  - sync-profiles repairs approved requests that lost their account
"""

from __future__ import annotations

import pytest

from auth.models import ADMIN, CLIENT, PENDING, SECURITY_TEAM, SUPER_ADMIN, AccessRequest
from auth.tokens import hash_password


def _access_request(env, email: str) -> int:
    return env.user_store.create_access_request(
        AccessRequest(
            email=email,
            full_name="Requested User",
            organization_id=env.org_id,
            hashed_password=hash_password(env.password),
        )
    )


class TestAuthorization:
    @pytest.mark.parametrize("who", ["member", "client"])
    def test_non_admins_forbidden(self, portal_env, who) -> None:
        resp = portal_env.client.get("/api/v1/admin/users", headers=portal_env.headers[who])
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_settings_need_super_admin(self, portal_env) -> None:
        assert portal_env.client.get("/api/v1/admin/settings", headers=portal_env.headers["admin"]).status_code == 403
        resp = portal_env.client.get("/api/v1/admin/settings", headers=portal_env.headers["super_admin"])
        assert resp.status_code == 200
        assert resp.json() == {"self_registration_enabled": True, "organization_signup_enabled": True}


class TestUserManagement:
    def test_list_users_filters(self, portal_env) -> None:
        resp = portal_env.client.get(
            "/api/v1/admin/users",
            params={"role": CLIENT, "organization_id": portal_env.org_id},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 200
        assert portal_env.users["client"].id in {u["id"] for u in resp.json()}
        assert all(u["role"] == CLIENT for u in resp.json())

    def test_admin_cannot_change_roles(self, portal_env) -> None:
        user = portal_env.add_user("promotee", "promotee@admin.test", SECURITY_TEAM)
        resp = portal_env.client.patch(
            f"/api/v1/admin/users/{user.id}", json={"role": ADMIN}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 403

    def test_super_admin_changes_role(self, portal_env) -> None:
        user = portal_env.add_user("promoted", "promoted@admin.test", SECURITY_TEAM)
        resp = portal_env.client.patch(
            f"/api/v1/admin/users/{user.id}",
            json={"role": ADMIN, "designation": "Team lead"},
            headers=portal_env.headers["super_admin"],
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["role"] == ADMIN
        assert resp.json()["designation"] == "Team lead"

    def test_unknown_organization_rejected(self, portal_env) -> None:
        resp = portal_env.client.patch(
            f"/api/v1/admin/users/{portal_env.users['client'].id}",
            json={"organization_id": 424242},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_organization"

    def test_unknown_user_404(self, portal_env) -> None:
        resp = portal_env.client.patch(
            "/api/v1/admin/users/999999", json={"full_name": "Ghost"}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 404

    def test_user_emails(self, portal_env) -> None:
        ids = [portal_env.users["admin"].id, portal_env.users["client"].id]
        resp = portal_env.client.post(
            "/api/v1/admin/user-emails", json={"user_ids": ids + [999999]}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 200
        assert resp.json() == {str(u.id): u.email for u in (portal_env.users["admin"], portal_env.users["client"])}


class TestApproval:
    def test_approve_pending_user(self, portal_env) -> None:
        user = portal_env.add_user("waiting", "waiting@admin.test", SECURITY_TEAM, status=PENDING)
        resp = portal_env.client.post(
            "/api/v1/admin/approve-user", json={"user_id": user.id}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["user"]["status"] == "approved"

        inbox = portal_env.portal_store.list_notifications_for_user(user.id)
        assert [n.type for n in inbox] == ["approval"]

        again = portal_env.client.post(
            "/api/v1/admin/approve-user", json={"user_id": user.id}, headers=portal_env.headers["admin"]
        )
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "already_approved"

    def test_approve_access_request_creates_account(self, portal_env) -> None:
        rid = _access_request(portal_env, "New.Client@admin.test")
        resp = portal_env.client.post(
            "/api/v1/admin/approve-user", json={"request_id": rid}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["request_id"] == rid
        assert data["user"]["email"] == "new.client@admin.test"
        assert data["user"]["role"] == CLIENT
        assert data["user"]["organization_id"] == portal_env.org_id

        # The shared signup password works straight away.
        login = portal_env.client.post(
            "/api/v1/auth/login", json={"email": "new.client@admin.test", "password": portal_env.password}
        )
        portal_env.client.cookies.clear()
        assert login.status_code == 200

        again = portal_env.client.post(
            "/api/v1/admin/approve-user", json={"request_id": rid}, headers=portal_env.headers["admin"]
        )
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "not_pending"

    def test_approve_request_for_existing_email(self, portal_env) -> None:
        rid = _access_request(portal_env, portal_env.users["client"].email)
        resp = portal_env.client.post(
            "/api/v1/admin/approve-user", json={"request_id": rid}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        assert portal_env.user_store.get_access_request(rid).status == PENDING

    def test_target_must_be_exactly_one(self, portal_env) -> None:
        for body in ({}, {"user_id": 1, "request_id": 1}):
            resp = portal_env.client.post("/api/v1/admin/approve-user", json=body, headers=portal_env.headers["admin"])
            assert resp.status_code == 422

    def test_reject_access_request(self, portal_env) -> None:
        rid = _access_request(portal_env, "denied@admin.test")
        resp = portal_env.client.post(
            "/api/v1/admin/reject-user", json={"request_id": rid}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        again = portal_env.client.post(
            "/api/v1/admin/reject-user", json={"request_id": rid}, headers=portal_env.headers["admin"]
        )
        assert again.status_code == 409

    def test_reject_user(self, portal_env) -> None:
        user = portal_env.add_user("rejectee", "rejectee@admin.test", SECURITY_TEAM, status=PENDING)
        resp = portal_env.client.post(
            "/api/v1/admin/reject-user", json={"user_id": user.id}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["status"] == "rejected"

    def test_cannot_reject_self(self, portal_env) -> None:
        resp = portal_env.client.post(
            "/api/v1/admin/reject-user",
            json={"user_id": portal_env.users["admin"].id},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_rejection"

    def test_access_request_listing(self, portal_env) -> None:
        rid = _access_request(portal_env, "listed@admin.test")
        resp = portal_env.client.get(
            "/api/v1/admin/access-requests",
            params={"status": "pending", "organization_id": portal_env.org_id},
            headers=portal_env.headers["admin"],
        )
        assert rid in {r["id"] for r in resp.json()}
        assert "hashed_password" not in resp.json()[0]


class TestLockoutGuards:
    def test_cannot_suspend_self(self, portal_env) -> None:
        resp = portal_env.client.post(
            "/api/v1/admin/suspend-user",
            json={"user_id": portal_env.users["admin"].id},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_suspension"

    def test_last_super_admin_cannot_be_suspended(self, portal_env) -> None:
        resp = portal_env.client.post(
            "/api/v1/admin/suspend-user",
            json={"user_id": portal_env.users["super_admin"].id},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "last_super_admin"

    def test_last_super_admin_cannot_be_rejected(self, portal_env) -> None:
        root = portal_env.users["super_admin"]
        resp = portal_env.client.post(
            "/api/v1/admin/reject-user", json={"user_id": root.id}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "last_super_admin"
        assert portal_env.user_store.get_by_id(root.id).status == "approved"

    def test_last_super_admin_cannot_be_demoted(self, portal_env) -> None:
        root = portal_env.users["super_admin"]
        resp = portal_env.client.patch(
            f"/api/v1/admin/users/{root.id}", json={"role": ADMIN}, headers=portal_env.headers["super_admin"]
        )
        assert resp.status_code == 400
        assert portal_env.user_store.get_by_id(root.id).role == SUPER_ADMIN

    def test_suspend_and_unsuspend(self, portal_env) -> None:
        user = portal_env.add_user("flaky", "flaky@admin.test", SECURITY_TEAM)
        resp = portal_env.client.post(
            "/api/v1/admin/suspend-user", json={"user_id": user.id}, headers=portal_env.headers["admin"]
        )
        assert resp.status_code == 200
        assert resp.json()["suspended"] is True
        assert portal_env.client.get("/api/v1/auth/me", headers=portal_env.headers["flaky"]).status_code == 401

        resp = portal_env.client.post(
            "/api/v1/admin/suspend-user",
            json={"user_id": user.id, "suspended": False},
            headers=portal_env.headers["admin"],
        )
        assert resp.json()["suspended"] is False
        assert portal_env.client.get("/api/v1/auth/me", headers=portal_env.headers["flaky"]).status_code == 200


class TestBulkApproval:
    def test_approve_email_access(self, portal_env) -> None:
        signup = portal_env.client.post(
            "/api/v1/organizations/signup",
            json={
                "name": "Vandelay Industries",
                "contact_email": "art@vandelay.test",
                "services": {"android": {"tier": "Standard"}},
                "users": [{"email": "art@vandelay.test"}, {"email": "kramer@vandelay.test"}],
                "password": "latex-salesman",
            },
        )
        assert signup.status_code == 201, signup.text
        org_id = signup.json()["organization_id"]

        inbox = portal_env.portal_store.list_notifications_for_user(portal_env.users["admin"].id, include_broadcast=True)
        (note,) = [n for n in inbox if n.type == "email_access_request" and n.organization_id == org_id]

        resp = portal_env.client.post(
            "/api/v1/admin/approve-email-access",
            json={"notification_id": note.id},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 200, resp.text
        assert len(resp.json()["created"]) == 2
        assert resp.json()["errors"] == []
        assert portal_env.portal_store.get_notification(note.id).read is True
        assert portal_env.user_store.get_by_email("kramer@vandelay.test").organization_id == org_id

        # A repeat reports every request as no longer pending.
        again = portal_env.client.post(
            "/api/v1/admin/approve-email-access",
            json={"notification_id": note.id},
            headers=portal_env.headers["admin"],
        )
        assert again.json()["created"] == []
        assert len(again.json()["errors"]) == 2

    def test_wrong_notification_type_404(self, portal_env) -> None:
        user = portal_env.add_user("bulk_waiting", "bulk-waiting@admin.test", SECURITY_TEAM, status=PENDING)
        portal_env.client.post(
            "/api/v1/admin/approve-user", json={"user_id": user.id}, headers=portal_env.headers["admin"]
        )
        (approval,) = portal_env.portal_store.list_notifications_for_user(user.id)
        resp = portal_env.client.post(
            "/api/v1/admin/approve-email-access",
            json={"notification_id": approval.id},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 404


class TestSyncProfiles:
    def test_orphaned_approval_repaired(self, portal_env) -> None:
        rid = _access_request(portal_env, "orphan@admin.test")
        portal_env.user_store.approve_access_request(rid)
        portal_env.user_store.delete_user(portal_env.user_store.get_by_email("orphan@admin.test").id)

        found = portal_env.client.get("/api/v1/admin/sync-profiles", headers=portal_env.headers["admin"])
        assert rid in {r["id"] for r in found.json()["orphaned"]}

        resp = portal_env.client.post("/api/v1/admin/sync-profiles", headers=portal_env.headers["admin"])
        assert resp.status_code == 200
        assert len(resp.json()["created"]) >= 1
        assert portal_env.user_store.get_by_email("orphan@admin.test") is not None


class TestSettingsAndNotes:
    def test_update_settings(self, portal_env) -> None:
        resp = portal_env.client.patch(
            "/api/v1/admin/settings",
            json={"organization_signup_enabled": False},
            headers=portal_env.headers["super_admin"],
        )
        try:
            assert resp.status_code == 200
            assert resp.json()["organization_signup_enabled"] is False
        finally:
            portal_env.user_store.update_app_settings(organization_signup_enabled=True)

    def test_empty_settings_patch(self, portal_env) -> None:
        resp = portal_env.client.patch("/api/v1/admin/settings", json={}, headers=portal_env.headers["super_admin"])
        assert resp.status_code == 400

    def test_update_organization_notes(self, portal_env) -> None:
        resp = portal_env.client.post(
            "/api/v1/admin/update-organization",
            json={"organization_id": portal_env.org_id, "notes": "Quarterly retest"},
            headers=portal_env.headers["admin"],
        )
        assert resp.status_code == 200
        assert resp.json()["notes"] == "Quarterly retest"
        missing = portal_env.client.post(
            "/api/v1/admin/update-organization",
            json={"organization_id": 999999, "notes": "x"},
            headers=portal_env.headers["admin"],
        )
        assert missing.status_code == 404
