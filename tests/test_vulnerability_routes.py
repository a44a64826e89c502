"""
tests/test_vulnerability_routes.py -- Integration tests for /api/v1/vulnerabilities
and /api/v1/verifications.

Coverage:
  - Submission: 201 pending finding from an assigned member, 403 for other
    roles, 422 on schema violations (bad severity, cvss out of range, CWE format)
  - Review: approve hands the finding to a client of the same organization,
    reject needs comments; both return 409 once the finding left pending
  - Remediation: close / reopen by the assigned client only
  - Verification round trip over HTTP, including a rejected fix resubmitted
  - Scoping: clients get 404 (not 403) for pending findings; list filters

Workflow errors share the {"error": {"code", "message", "detail"}} envelope.
"""

from __future__ import annotations

import pytest

from auth.models import CLIENT, SECURITY_TEAM


def _submit(env, title: str = "SQL injection in /search", **overrides) -> dict:
    body = {
        "organization_id": env.org_id,
        "title": title,
        "description": "The q parameter is concatenated into a LIKE clause.",
        "severity": "Critical",
        "cvss_score": 9.1,
        "service_type": "web",
        "instances": ["https://app.example.test/search?q=1"],
        "cwe_id": "cwe-89",
    }
    body.update(overrides)
    resp = env.client.post("/api/v1/vulnerabilities", json=body, headers=env.headers["member"])
    assert resp.status_code == 201, resp.text
    return resp.json()


def _approve(env, vuln_id: int, **extra) -> dict:
    body = {"client_id": env.users["client"].id, **extra}
    resp = env.client.post(f"/api/v1/vulnerabilities/{vuln_id}/approve", json=body, headers=env.headers["admin"])
    assert resp.status_code == 200, resp.text
    return resp.json()


def _closed(env) -> dict:
    vuln = _approve(env, _submit(env)["id"])
    resp = env.client.post(
        f"/api/v1/vulnerabilities/{vuln['id']}/close",
        json={"comments": "Parameterized the query"},
        headers=env.headers["client"],
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture(scope="module")
def env(portal_env):
    portal_env.add_user("outsider", "outsider@vulns.test", SECURITY_TEAM)
    portal_env.add_user("colleague", "colleague@vulns.test", CLIENT, organization_id=portal_env.org_id)
    return portal_env


class TestSubmit:
    def test_member_submits_pending_finding(self, env) -> None:
        data = _submit(env)
        assert data["status"] == "pending"
        assert data["client_status"] is None
        assert data["verification_status"] == "not_submitted"
        assert data["submitted_by"] == env.users["member"].id
        assert data["cwe_id"] == "CWE-89"

    def test_unassigned_member_forbidden(self, env) -> None:
        resp = env.client.post(
            "/api/v1/vulnerabilities",
            json={"organization_id": env.org_id, "title": "t", "description": "d", "severity": "Low"},
            headers=env.headers["outsider"],
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    @pytest.mark.parametrize("who", ["admin", "client"])
    def test_other_roles_forbidden(self, env, who) -> None:
        resp = env.client.post(
            "/api/v1/vulnerabilities",
            json={"organization_id": env.org_id, "title": "t", "description": "d", "severity": "Low"},
            headers=env.headers[who],
        )
        assert resp.status_code == 403

    @pytest.mark.parametrize(
        "override",
        [{"severity": "Catastrophic"}, {"cvss_score": 11.5}, {"cwe_id": "89"}, {"service_type": "desktop"}],
    )
    def test_schema_violations(self, env, override) -> None:
        body = {"organization_id": env.org_id, "title": "t", "description": "d", "severity": "Low", **override}
        resp = env.client.post("/api/v1/vulnerabilities", json=body, headers=env.headers["member"])
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_unknown_organization(self, env) -> None:
        resp = env.client.post(
            "/api/v1/vulnerabilities",
            json={"organization_id": 99999, "title": "t", "description": "d", "severity": "Low"},
            headers=env.headers["member"],
        )
        assert resp.status_code == 404

    def test_requires_authentication(self, env) -> None:
        assert env.client.get("/api/v1/vulnerabilities").status_code == 401


class TestReview:
    def test_approve_assigns_client(self, env) -> None:
        vuln = _submit(env)
        data = _approve(env, vuln["id"], deadline="2030-01-15T00:00:00Z", comments="Confirmed")
        assert data["status"] == "approved"
        assert data["client_status"] == "open"
        assert data["assigned_to_client"] == env.users["client"].id
        assert data["approved_by"] == env.users["admin"].id
        assert data["client_deadline"].startswith("2030-01-15T00:00:00")

    def test_approve_twice_conflicts(self, env) -> None:
        vuln = _approve(env, _submit(env)["id"])
        resp = env.client.post(
            f"/api/v1/vulnerabilities/{vuln['id']}/approve",
            json={"client_id": env.users["client"].id},
            headers=env.headers["admin"],
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_transition"

    def test_approve_with_non_client_fails_validation(self, env) -> None:
        vuln = _submit(env)
        resp = env.client.post(
            f"/api/v1/vulnerabilities/{vuln['id']}/approve",
            json={"client_id": env.users["member"].id},
            headers=env.headers["admin"],
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_failed"

    def test_member_cannot_approve(self, env) -> None:
        vuln = _submit(env)
        resp = env.client.post(
            f"/api/v1/vulnerabilities/{vuln['id']}/approve",
            json={"client_id": env.users["client"].id},
            headers=env.headers["member"],
        )
        assert resp.status_code == 403

    def test_reject_requires_comments(self, env) -> None:
        vuln = _submit(env)
        url = f"/api/v1/vulnerabilities/{vuln['id']}/reject"
        assert env.client.post(url, json={}, headers=env.headers["admin"]).status_code == 422
        resp = env.client.post(url, json={"comments": "Out of scope"}, headers=env.headers["admin"])
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        assert resp.json()["admin_comments"] == "Out of scope"


class TestRemediation:
    def test_client_closes_without_body(self, env) -> None:
        vuln = _approve(env, _submit(env)["id"])
        resp = env.client.post(f"/api/v1/vulnerabilities/{vuln['id']}/close", headers=env.headers["client"])
        assert resp.status_code == 200, resp.text
        assert resp.json()["client_status"] == "closed"

    def test_reopen_then_close(self, env) -> None:
        vuln = _approve(env, _submit(env)["id"])
        resp = env.client.post(
            f"/api/v1/vulnerabilities/{vuln['id']}/reopen",
            json={"comments": "Need reproduction steps"},
            headers=env.headers["client"],
        )
        assert resp.status_code == 200
        assert resp.json()["client_status"] == "reopened"
        assert resp.json()["client_comments"] == "Need reproduction steps"

    def test_reopen_requires_comments(self, env) -> None:
        vuln = _approve(env, _submit(env)["id"])
        resp = env.client.post(
            f"/api/v1/vulnerabilities/{vuln['id']}/reopen", json={"comments": "  "}, headers=env.headers["client"]
        )
        assert resp.status_code == 422

    def test_colleague_cannot_close(self, env) -> None:
        vuln = _approve(env, _submit(env)["id"])
        resp = env.client.post(f"/api/v1/vulnerabilities/{vuln['id']}/close", headers=env.headers["colleague"])
        assert resp.status_code == 403

    def test_closed_cannot_be_closed_again(self, env) -> None:
        vuln = _closed(env)
        resp = env.client.post(f"/api/v1/vulnerabilities/{vuln['id']}/close", headers=env.headers["client"])
        assert resp.status_code == 409


class TestScoping:
    def test_client_gets_404_for_pending(self, env) -> None:
        vuln = _submit(env)
        resp = env.client.get(f"/api/v1/vulnerabilities/{vuln['id']}", headers=env.headers["client"])
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_client_list_only_shows_approved(self, env) -> None:
        pending = _submit(env)
        approved = _approve(env, _submit(env)["id"])
        resp = env.client.get("/api/v1/vulnerabilities", headers=env.headers["colleague"])
        ids = {v["id"] for v in resp.json()}
        assert approved["id"] in ids
        assert pending["id"] not in ids
        assert all(v["status"] == "approved" for v in resp.json())

    def test_outsider_sees_nothing(self, env) -> None:
        _submit(env)
        resp = env.client.get("/api/v1/vulnerabilities", headers=env.headers["outsider"])
        assert resp.status_code == 200
        assert resp.json() == []

    def test_filters(self, env) -> None:
        low = _submit(env, title="Verbose server banner", severity="Low")
        resp = env.client.get(
            "/api/v1/vulnerabilities", params={"severity": "Low", "mine": "true"}, headers=env.headers["member"]
        )
        assert low["id"] in {v["id"] for v in resp.json()}
        assert all(v["severity"] == "Low" for v in resp.json())

        resp = env.client.get(
            "/api/v1/vulnerabilities", params={"status": "pending"}, headers=env.headers["admin"]
        )
        assert all(v["status"] == "pending" for v in resp.json())

    def test_bad_enum_filter(self, env) -> None:
        resp = env.client.get(
            "/api/v1/vulnerabilities", params={"client_status": "archived"}, headers=env.headers["admin"]
        )
        assert resp.status_code == 422


class TestVerificationRoutes:
    def test_round_trip(self, env) -> None:
        vuln = _closed(env)
        resp = env.client.post(f"/api/v1/vulnerabilities/{vuln['id']}/verification", headers=env.headers["client"])
        assert resp.status_code == 201, resp.text
        verification = resp.json()
        assert verification["verification_status"] == "pending"
        vid = verification["id"]

        # Not yet assigned: the member cannot see it.
        assert env.client.get(f"/api/v1/verifications/{vid}", headers=env.headers["member"]).status_code == 404

        resp = env.client.post(
            f"/api/v1/verifications/{vid}/assign",
            json={"security_team_user_id": env.users["member"].id, "deadline": "2030-02-01T12:00:00+00:00"},
            headers=env.headers["admin"],
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["verification_status"] == "assigned"

        queue = env.client.get("/api/v1/verifications", params={"status": "assigned"}, headers=env.headers["member"])
        assert vid in {v["id"] for v in queue.json()}

        resp = env.client.post(f"/api/v1/verifications/{vid}/verify", headers=env.headers["member"])
        assert resp.status_code == 200, resp.text
        assert resp.json()["verification_status"] == "verified"

        detail = env.client.get(f"/api/v1/vulnerabilities/{vuln['id']}", headers=env.headers["client"])
        assert detail.json()["verification_status"] == "verified"

    def test_rejected_fix_resubmitted(self, env) -> None:
        vuln = _closed(env)
        first = env.client.post(f"/api/v1/vulnerabilities/{vuln['id']}/verification", headers=env.headers["client"])
        vid = first.json()["id"]
        env.client.post(
            f"/api/v1/verifications/{vid}/assign",
            json={"security_team_user_id": env.users["member"].id},
            headers=env.headers["admin"],
        )
        url = f"/api/v1/verifications/{vid}/reject"
        assert env.client.post(url, json={}, headers=env.headers["member"]).status_code == 422
        resp = env.client.post(url, json={"comments": "Still injectable via ORDER BY"}, headers=env.headers["member"])
        assert resp.status_code == 200
        assert resp.json()["verification_status"] == "rejected"
        assert resp.json()["security_team_comments"] == "Still injectable via ORDER BY"

        again = env.client.post(f"/api/v1/vulnerabilities/{vuln['id']}/verification", headers=env.headers["client"])
        assert again.status_code == 201
        assert again.json()["id"] != vid

    def test_verification_requires_closed(self, env) -> None:
        vuln = _approve(env, _submit(env)["id"])
        resp = env.client.post(f"/api/v1/vulnerabilities/{vuln['id']}/verification", headers=env.headers["client"])
        assert resp.status_code == 409

    def test_client_lists_own_requests(self, env) -> None:
        vuln = _closed(env)
        created = env.client.post(
            f"/api/v1/vulnerabilities/{vuln['id']}/verification", headers=env.headers["client"]
        ).json()
        mine = env.client.get("/api/v1/verifications", headers=env.headers["client"]).json()
        assert created["id"] in {v["id"] for v in mine}
        assert all(v["submitted_by_client"] == env.users["client"].id for v in mine)
        theirs = env.client.get("/api/v1/verifications", headers=env.headers["colleague"]).json()
        assert created["id"] not in {v["id"] for v in theirs}

    def test_assign_requires_admin(self, env) -> None:
        vuln = _closed(env)
        vid = env.client.post(
            f"/api/v1/vulnerabilities/{vuln['id']}/verification", headers=env.headers["client"]
        ).json()["id"]
        resp = env.client.post(
            f"/api/v1/verifications/{vid}/assign",
            json={"security_team_user_id": env.users["member"].id},
            headers=env.headers["client"],
        )
        # The client can see their own request, so this is a role failure.
        assert resp.status_code == 403
