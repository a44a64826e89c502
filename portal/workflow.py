"""
portal/workflow.py -- Status-transition workflow for vulnerabilities and verifications.

This module is the single authority for "who may do what, from which state".
Routes resolve the acting user and parse the request body, then call one
Workflow method. The method checks role, record scope and current state,
and commits the change through PortalStore.apply_transition() so the row
update, its activity entry and its notifications land together.

Lifecycle:

  Vulnerability.status        pending --approve--> approved
                              pending --reject---> rejected
  Vulnerability.client_status (approved only)
                              open/reopened --close--> closed
                              open/reopened --reopen-> reopened
  Verification                closed vuln --request--> pending
                              pending --assign--> assigned
                              assigned --verify--> verified
                              assigned --reject--> rejected

  Vulnerability.verification_status mirrors the retest outcome:
  not_submitted -> pending_verification -> verified | verification_rejected.
  A vulnerability whose fix was rejected may be submitted for verification
  again once the client has closed it.

Errors are WorkflowError subclasses. Each carries an HTTP status and a
machine-readable code; api/main.py maps them into the error envelope, so
this module never imports FastAPI.

Layer rule: portal/ imports auth/ (for User and UserStore), never api/.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError

from auth.models import ADMIN_ROLES, CLIENT, SECURITY_TEAM, User
from auth.store import UserStore
from portal.models import (
    APPROVED,
    CLIENT_CLOSED,
    CLIENT_OPEN,
    CLIENT_REOPENED,
    NOT_SUBMITTED,
    PENDING,
    PENDING_VERIFICATION,
    REJECTED,
    SERVICE_KEYS,
    SEVERITIES,
    VERIFICATION_ASSIGNED,
    VERIFICATION_FAILED,
    VERIFICATION_PENDING,
    VERIFICATION_REJECTED,
    VERIFICATION_VERIFIED,
    VERIFIED,
    ActivityLog,
    Notification,
    Organization,
    SecurityTeamAssignment,
    Verification,
    Vulnerability,
)
from portal.store import PortalStore, RowUpdate

logger = logging.getLogger("vaptportal.workflow")

_ACTIONABLE_CLIENT_STATUSES = (CLIENT_OPEN, CLIENT_REOPENED)
_RESUBMITTABLE = (NOT_SUBMITTED, VERIFICATION_REJECTED)
_ORG_STATUSES = (PENDING, APPROVED, REJECTED)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WorkflowError(Exception):
    """Base class for workflow failures. Subclasses fix status_code and code."""

    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class NotFound(WorkflowError):
    status_code = 404
    code = "not_found"


class PermissionDenied(WorkflowError):
    status_code = 403
    code = "forbidden"


class InvalidTransition(WorkflowError):
    status_code = 409
    code = "invalid_transition"


class ValidationFailed(WorkflowError):
    status_code = 422
    code = "validation_failed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_role(actor: User, roles: Iterable[str], action: str) -> None:
    if actor.role not in roles:
        raise PermissionDenied(f"Your role may not {action}.")


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not value.strip():
        raise ValidationFailed(f"{field_name} is required.")
    return value.strip()


def _vuln_payload(vuln: Vulnerability, **extra) -> dict:
    payload = {
        "vulnerability_id": vuln.id,
        "title": vuln.title,
        "severity": vuln.severity,
        "organization_id": vuln.organization_id,
    }
    payload.update(extra)
    return payload


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class Workflow:
    """Role-checked status transitions over a PortalStore.

    Usage:
        wf = Workflow(portal_store, user_store)
        vuln = wf.submit_vulnerability(member, Vulnerability(...))
        wf.approve_vulnerability(admin, vuln.id, client_id=7, deadline="2026-11-01T00:00:00+00:00")
    """

    def __init__(self, store: PortalStore, users: UserStore) -> None:
        self.store = store
        self.users = users

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    def visible_organization_ids(self, actor: User) -> Optional[set[int]]:
        """Return the organization IDs the actor may see, or None for "all"."""
        if actor.is_admin:
            return None
        if actor.role == SECURITY_TEAM:
            return {a.organization_id for a in self.store.list_assignments(security_team_user_id=actor.id)}
        if actor.organization_id is not None:
            return {actor.organization_id}
        return set()

    def can_view_organization(self, actor: User, org_id: int) -> bool:
        visible = self.visible_organization_ids(actor)
        return visible is None or org_id in visible

    def can_view_vulnerability(self, actor: User, vuln: Vulnerability) -> bool:
        if actor.is_admin:
            return True
        if actor.role == SECURITY_TEAM:
            return vuln.submitted_by == actor.id or self.store.is_assigned(actor.id, vuln.organization_id)
        # Clients only ever see findings that passed admin review.
        return vuln.status == APPROVED and (
            vuln.assigned_to_client == actor.id or vuln.organization_id == actor.organization_id
        )

    def can_view_verification(self, actor: User, verification: Verification) -> bool:
        if actor.is_admin:
            return True
        if actor.role == SECURITY_TEAM:
            return verification.assigned_to_security_team == actor.id
        return verification.submitted_by_client == actor.id

    def get_organization(self, actor: User, org_id: int) -> Organization:
        org = self.store.get_organization(org_id)
        if org is None or not self.can_view_organization(actor, org_id):
            raise NotFound(f"Organization {org_id} not found.")
        return org

    def get_vulnerability(self, actor: User, vuln_id: int) -> Vulnerability:
        """Fetch a vulnerability the actor may see. Invisible rows report 404, not 403."""
        vuln = self.store.get_vulnerability(vuln_id)
        if vuln is None or not self.can_view_vulnerability(actor, vuln):
            raise NotFound(f"Vulnerability {vuln_id} not found.")
        return vuln

    def get_verification(self, actor: User, verification_id: int) -> Verification:
        verification = self.store.get_verification(verification_id)
        if verification is None or not self.can_view_verification(actor, verification):
            raise NotFound(f"Verification {verification_id} not found.")
        return verification

    def list_vulnerabilities(self, actor: User, **filters) -> list[Vulnerability]:
        """List vulnerabilities scoped to what the actor may see."""
        if actor.is_admin:
            return self.store.list_vulnerabilities(**filters)
        if actor.role == SECURITY_TEAM:
            visible = self.visible_organization_ids(actor)
            vulns = self.store.list_vulnerabilities(**filters)
            return [v for v in vulns if v.organization_id in visible or v.submitted_by == actor.id]
        if filters.get("status") not in (None, APPROVED):
            return []
        if filters.get("organization_id") not in (None, actor.organization_id):
            return []
        filters["status"] = APPROVED
        filters.pop("organization_ids", None)
        if actor.organization_id is None:
            filters["assigned_to_client"] = actor.id
        else:
            filters["organization_id"] = actor.organization_id
        return self.store.list_vulnerabilities(**filters)

    def list_verifications(self, actor: User, status: Optional[str] = None) -> list[Verification]:
        if actor.is_admin:
            return self.store.list_verifications(status=status)
        if actor.role == SECURITY_TEAM:
            return self.store.list_verifications(status=status, assigned_to_security_team=actor.id)
        return self.store.list_verifications(status=status, submitted_by_client=actor.id)

    # ------------------------------------------------------------------
    # Vulnerabilities
    # ------------------------------------------------------------------

    def submit_vulnerability(self, actor: User, vuln: Vulnerability) -> Vulnerability:
        """Record a new finding from a security-team member assigned to the organization."""
        _require_role(actor, (SECURITY_TEAM,), "submit vulnerabilities")
        org = self.store.get_organization(vuln.organization_id)
        if org is None:
            raise NotFound(f"Organization {vuln.organization_id} not found.")
        if not self.store.is_assigned(actor.id, org.id):
            raise PermissionDenied("You are not assigned to this organization.")
        if org.status != APPROVED:
            raise InvalidTransition("Organization is not approved.")
        vuln.title = _require_text(vuln.title, "title")
        vuln.description = _require_text(vuln.description, "description")
        if vuln.severity not in SEVERITIES:
            raise ValidationFailed(f"severity must be one of {', '.join(SEVERITIES)}.")
        if vuln.cvss_score is not None and not 0.0 <= vuln.cvss_score <= 10.0:
            raise ValidationFailed("cvss_score must be between 0.0 and 10.0.")
        if vuln.service_type is not None and vuln.service_type not in SERVICE_KEYS:
            raise ValidationFailed(f"service_type must be one of {', '.join(SERVICE_KEYS)}.")

        vuln.submitted_by = actor.id
        vuln.status = PENDING
        vuln.client_status = None
        vuln.verification_status = NOT_SUBMITTED
        vuln_id = self.store.create_vulnerability(
            vuln,
            activity=ActivityLog(
                action="vulnerability_submitted",
                entity_type="vulnerability",
                actor_id=actor.id,
                organization_id=org.id,
                detail={"title": vuln.title, "severity": vuln.severity},
            ),
            notifications=[
                Notification(
                    type="vulnerability_submitted",
                    actor_id=actor.id,
                    payload={
                        "title": vuln.title,
                        "severity": vuln.severity,
                        "organization_id": org.id,
                        "organization_name": org.name,
                        "submitted_by": actor.id,
                    },
                )
            ],
        )
        logger.info("Vulnerability %d submitted by user %d for organization %d", vuln_id, actor.id, org.id)
        return self.store.get_vulnerability(vuln_id)

    def approve_vulnerability(
        self,
        actor: User,
        vuln_id: int,
        client_id: int,
        deadline: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> Vulnerability:
        """Approve a pending finding and hand it to a client of the same organization."""
        _require_role(actor, ADMIN_ROLES, "approve vulnerabilities")
        vuln = self.get_vulnerability(actor, vuln_id)
        if vuln.status != PENDING:
            raise InvalidTransition(f"Vulnerability is {vuln.status}, not pending.")
        self._validate_client(client_id, vuln.organization_id)

        now = _now_iso()
        ok = self.store.apply_transition(
            [
                RowUpdate(
                    "vulnerabilities",
                    vuln_id,
                    expected={"status": PENDING},
                    values={
                        "status": APPROVED,
                        "approved_by": actor.id,
                        "approved_at": now,
                        "admin_comments": comments,
                        "assigned_to_client": client_id,
                        "client_status": CLIENT_OPEN,
                        "client_deadline": deadline,
                        "verification_status": NOT_SUBMITTED,
                    },
                )
            ],
            activity=ActivityLog(
                action="vulnerability_approved",
                entity_type="vulnerability",
                entity_id=vuln_id,
                actor_id=actor.id,
                organization_id=vuln.organization_id,
                detail={"assigned_to_client": client_id, "deadline": deadline},
            ),
            notifications=[
                Notification(
                    type="vulnerability_approved",
                    user_id=vuln.submitted_by,
                    actor_id=actor.id,
                    payload=_vuln_payload(vuln, admin_comments=comments),
                ),
                Notification(
                    type="vulnerability_assigned",
                    user_id=client_id,
                    actor_id=actor.id,
                    payload=_vuln_payload(vuln, deadline=deadline),
                ),
            ],
        )
        if not ok:
            raise InvalidTransition("Vulnerability changed while it was being approved.")
        logger.info("Vulnerability %d approved by user %d, assigned to client %d", vuln_id, actor.id, client_id)
        return self.store.get_vulnerability(vuln_id)

    def reject_vulnerability(self, actor: User, vuln_id: int, comments: Optional[str]) -> Vulnerability:
        """Reject a pending finding. Admin comments are mandatory."""
        _require_role(actor, ADMIN_ROLES, "reject vulnerabilities")
        comments = _require_text(comments, "comments")
        vuln = self.get_vulnerability(actor, vuln_id)
        if vuln.status != PENDING:
            raise InvalidTransition(f"Vulnerability is {vuln.status}, not pending.")

        ok = self.store.apply_transition(
            [
                RowUpdate(
                    "vulnerabilities",
                    vuln_id,
                    expected={"status": PENDING},
                    values={
                        "status": REJECTED,
                        "approved_by": actor.id,
                        "approved_at": _now_iso(),
                        "admin_comments": comments,
                    },
                )
            ],
            activity=ActivityLog(
                action="vulnerability_rejected",
                entity_type="vulnerability",
                entity_id=vuln_id,
                actor_id=actor.id,
                organization_id=vuln.organization_id,
                detail={"comments": comments},
            ),
            notifications=[
                Notification(
                    type="vulnerability_rejected",
                    user_id=vuln.submitted_by,
                    actor_id=actor.id,
                    payload=_vuln_payload(vuln, admin_comments=comments),
                )
            ],
        )
        if not ok:
            raise InvalidTransition("Vulnerability changed while it was being rejected.")
        logger.info("Vulnerability %d rejected by user %d", vuln_id, actor.id)
        return self.store.get_vulnerability(vuln_id)

    def close_vulnerability(self, actor: User, vuln_id: int, comments: Optional[str] = None) -> Vulnerability:
        """Mark an assigned finding as remediated by the client."""
        vuln = self._client_actionable(actor, vuln_id, "close")
        ok = self.store.apply_transition(
            [
                RowUpdate(
                    "vulnerabilities",
                    vuln_id,
                    expected={"status": APPROVED, "client_status": vuln.client_status},
                    values={
                        "client_status": CLIENT_CLOSED,
                        "client_comments": comments,
                        "client_updated_at": _now_iso(),
                    },
                )
            ],
            activity=ActivityLog(
                action="vulnerability_closed",
                entity_type="vulnerability",
                entity_id=vuln_id,
                actor_id=actor.id,
                organization_id=vuln.organization_id,
            ),
        )
        if not ok:
            raise InvalidTransition("Vulnerability changed while it was being closed.")
        logger.info("Vulnerability %d closed by client %d", vuln_id, actor.id)
        return self.store.get_vulnerability(vuln_id)

    def reopen_vulnerability(self, actor: User, vuln_id: int, comments: Optional[str]) -> Vulnerability:
        """Send a finding back to the admins with the client's explanation."""
        comments = _require_text(comments, "comments")
        vuln = self._client_actionable(actor, vuln_id, "reopen")
        ok = self.store.apply_transition(
            [
                RowUpdate(
                    "vulnerabilities",
                    vuln_id,
                    expected={"status": APPROVED, "client_status": vuln.client_status},
                    values={
                        "client_status": CLIENT_REOPENED,
                        "client_comments": comments,
                        "client_updated_at": _now_iso(),
                    },
                )
            ],
            activity=ActivityLog(
                action="vulnerability_reopened",
                entity_type="vulnerability",
                entity_id=vuln_id,
                actor_id=actor.id,
                organization_id=vuln.organization_id,
                detail={"comments": comments},
            ),
            notifications=[
                Notification(
                    type="vulnerability_reopened",
                    actor_id=actor.id,
                    payload=_vuln_payload(vuln, client_comments=comments),
                )
            ],
        )
        if not ok:
            raise InvalidTransition("Vulnerability changed while it was being reopened.")
        logger.info("Vulnerability %d reopened by client %d", vuln_id, actor.id)
        return self.store.get_vulnerability(vuln_id)

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def request_verification(self, actor: User, vuln_id: int) -> Verification:
        """Ask for a retest of a vulnerability the client has closed."""
        _require_role(actor, (CLIENT,), "request verification")
        vuln = self.get_vulnerability(actor, vuln_id)
        if vuln.assigned_to_client != actor.id:
            raise PermissionDenied("This vulnerability is not assigned to you.")
        if vuln.client_status != CLIENT_CLOSED:
            raise InvalidTransition("Close the vulnerability before requesting verification.")
        if vuln.verification_status not in _RESUBMITTABLE:
            raise InvalidTransition(f"Verification is already {vuln.verification_status}.")

        verification_id = self.store.request_verification(
            Verification(vulnerability_id=vuln_id, submitted_by_client=actor.id),
            expected={
                "assigned_to_client": actor.id,
                "client_status": CLIENT_CLOSED,
                "verification_status": vuln.verification_status,
            },
            activity=ActivityLog(
                action="verification_requested",
                entity_type="verification",
                actor_id=actor.id,
                organization_id=vuln.organization_id,
                detail={"vulnerability_id": vuln_id},
            ),
            notifications=[
                Notification(
                    type="verification_requested",
                    actor_id=actor.id,
                    payload=_vuln_payload(vuln, submitted_by_client=actor.id),
                )
            ],
        )
        if verification_id is None:
            raise InvalidTransition("Vulnerability changed while verification was being requested.")
        logger.info("Verification %d requested for vulnerability %d by client %d", verification_id, vuln_id, actor.id)
        return self.store.get_verification(verification_id)

    def assign_verification(
        self,
        actor: User,
        verification_id: int,
        member_id: int,
        deadline: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> Verification:
        """Hand a pending verification to a security-team member."""
        _require_role(actor, ADMIN_ROLES, "assign verifications")
        verification = self.get_verification(actor, verification_id)
        if verification.verification_status != VERIFICATION_PENDING:
            raise InvalidTransition(f"Verification is {verification.verification_status}, not pending.")
        self._validate_member(member_id)
        vuln = self.store.get_vulnerability(verification.vulnerability_id)

        ok = self.store.apply_transition(
            [
                RowUpdate(
                    "verifications",
                    verification_id,
                    expected={"verification_status": VERIFICATION_PENDING},
                    values={
                        "verification_status": VERIFICATION_ASSIGNED,
                        "assigned_to_security_team": member_id,
                        "verification_deadline": deadline,
                        "admin_comments": comments,
                        "assigned_at": _now_iso(),
                    },
                )
            ],
            activity=ActivityLog(
                action="verification_assigned",
                entity_type="verification",
                entity_id=verification_id,
                actor_id=actor.id,
                organization_id=vuln.organization_id if vuln else None,
                detail={"assigned_to_security_team": member_id, "deadline": deadline},
            ),
            notifications=[
                Notification(
                    type="verification_assigned",
                    user_id=member_id,
                    actor_id=actor.id,
                    payload={
                        "verification_id": verification_id,
                        "vulnerability_id": verification.vulnerability_id,
                        "title": vuln.title if vuln else None,
                        "organization_id": vuln.organization_id if vuln else None,
                        "deadline": deadline,
                    },
                )
            ],
        )
        if not ok:
            raise InvalidTransition("Verification changed while it was being assigned.")
        logger.info("Verification %d assigned to member %d by user %d", verification_id, member_id, actor.id)
        return self.store.get_verification(verification_id)

    def verify_fix(self, actor: User, verification_id: int, comments: Optional[str] = None) -> Verification:
        """Confirm the client's fix holds."""
        return self._complete_verification(actor, verification_id, passed=True, comments=comments)

    def reject_fix(self, actor: User, verification_id: int, comments: Optional[str]) -> Verification:
        """Report that the fix did not hold. Comments are mandatory."""
        comments = _require_text(comments, "comments")
        return self._complete_verification(actor, verification_id, passed=False, comments=comments)

    def _complete_verification(
        self,
        actor: User,
        verification_id: int,
        passed: bool,
        comments: Optional[str],
    ) -> Verification:
        _require_role(actor, (SECURITY_TEAM,), "complete verifications")
        verification = self.get_verification(actor, verification_id)
        if verification.verification_status != VERIFICATION_ASSIGNED:
            raise InvalidTransition(f"Verification is {verification.verification_status}, not assigned.")
        vuln = self.store.get_vulnerability(verification.vulnerability_id)
        if vuln is None:
            raise NotFound(f"Vulnerability {verification.vulnerability_id} not found.")

        outcome = VERIFICATION_VERIFIED if passed else VERIFICATION_FAILED
        vuln_outcome = VERIFIED if passed else VERIFICATION_REJECTED
        event_type = "verification_completed" if passed else "verification_rejected"
        ok = self.store.apply_transition(
            [
                RowUpdate(
                    "verifications",
                    verification_id,
                    expected={"verification_status": VERIFICATION_ASSIGNED, "assigned_to_security_team": actor.id},
                    values={
                        "verification_status": outcome,
                        "security_team_comments": comments,
                        "verified_at": _now_iso(),
                    },
                ),
                RowUpdate(
                    "vulnerabilities",
                    vuln.id,
                    expected={"verification_status": PENDING_VERIFICATION},
                    values={"verification_status": vuln_outcome},
                ),
            ],
            activity=ActivityLog(
                action=event_type,
                entity_type="verification",
                entity_id=verification_id,
                actor_id=actor.id,
                organization_id=vuln.organization_id,
                detail={"comments": comments} if comments else {},
            ),
            notifications=[
                Notification(
                    type=event_type,
                    user_id=verification.submitted_by_client,
                    actor_id=actor.id,
                    payload=_vuln_payload(vuln, verification_id=verification_id, security_team_comments=comments),
                )
            ],
        )
        if not ok:
            raise InvalidTransition("Verification changed while it was being completed.")
        logger.info("Verification %d %s by member %d", verification_id, outcome, actor.id)
        return self.store.get_verification(verification_id)

    # ------------------------------------------------------------------
    # Organizations and assignments
    # ------------------------------------------------------------------

    def set_organization_status(self, actor: User, org_id: int, status: str, notes: Optional[str] = None) -> Organization:
        _require_role(actor, ADMIN_ROLES, "change organization status")
        if status not in _ORG_STATUSES:
            raise ValidationFailed(f"status must be one of {', '.join(_ORG_STATUSES)}.")
        org = self.get_organization(actor, org_id)
        values = {"status": status}
        if notes is not None:
            values["notes"] = notes
        ok = self.store.apply_transition(
            [RowUpdate("organizations", org_id, expected={"status": org.status}, values=values)],
            activity=ActivityLog(
                action="organization_status_changed",
                entity_type="organization",
                entity_id=org_id,
                actor_id=actor.id,
                organization_id=org_id,
                detail={"from": org.status, "to": status},
            ),
        )
        if not ok:
            raise InvalidTransition("Organization changed while its status was being updated.")
        logger.info("Organization %d status %s -> %s by user %d", org_id, org.status, status, actor.id)
        return self.store.get_organization(org_id)

    def assign_security_team(
        self,
        actor: User,
        member_id: int,
        org_id: int,
        services: Optional[list[str]] = None,
        deadline: Optional[str] = None,
    ) -> SecurityTeamAssignment:
        """Allow a security-team member to test (and report on) an approved organization."""
        _require_role(actor, ADMIN_ROLES, "assign security teams")
        member = self._validate_member(member_id)
        org = self.store.get_organization(org_id)
        if org is None:
            raise NotFound(f"Organization {org_id} not found.")
        if org.status != APPROVED:
            raise InvalidTransition("Only approved organizations can be assigned.")
        services = list(services or [])
        unknown = set(services) - set(SERVICE_KEYS)
        if unknown:
            raise ValidationFailed(f"Unknown services: {', '.join(sorted(unknown))}.")

        activity = ActivityLog(
            action="security_team_assigned",
            entity_type="organization",
            entity_id=org_id,
            actor_id=actor.id,
            organization_id=org_id,
            detail={"security_team_user_id": member.id, "services": services, "deadline": deadline},
        )
        note = Notification(
            type="security_team_assigned",
            user_id=member.id,
            actor_id=actor.id,
            payload={
                "organization_id": org_id,
                "organization_name": org.name,
                "services": services,
                "deadline": deadline,
            },
        )
        try:
            assignment_id = self.store.create_assignment(
                SecurityTeamAssignment(
                    security_team_user_id=member.id,
                    organization_id=org_id,
                    services=services,
                    deadline=deadline,
                    assigned_by=actor.id,
                ),
                activity=activity,
                notifications=[note],
            )
        except IntegrityError as exc:
            raise InvalidTransition(f"{member.email} is already assigned to {org.name}.") from exc
        logger.info("Member %d assigned to organization %d by user %d", member.id, org_id, actor.id)
        return self.store.get_assignment(assignment_id)

    def unassign_security_team(self, actor: User, assignment_id: int) -> None:
        _require_role(actor, ADMIN_ROLES, "remove security team assignments")
        assignment = self.store.get_assignment(assignment_id)
        if assignment is None:
            raise NotFound(f"Assignment {assignment_id} not found.")
        activity = ActivityLog(
            action="security_team_unassigned",
            entity_type="organization",
            entity_id=assignment.organization_id,
            actor_id=actor.id,
            organization_id=assignment.organization_id,
            detail={"security_team_user_id": assignment.security_team_user_id},
        )
        if not self.store.delete_assignment(assignment_id, activity=activity):
            raise NotFound(f"Assignment {assignment_id} not found.")
        logger.info("Assignment %d removed by user %d", assignment_id, actor.id)

    # ------------------------------------------------------------------
    # Internal checks
    # ------------------------------------------------------------------

    def _client_actionable(self, actor: User, vuln_id: int, action: str) -> Vulnerability:
        _require_role(actor, (CLIENT,), f"{action} vulnerabilities")
        vuln = self.get_vulnerability(actor, vuln_id)
        if vuln.assigned_to_client != actor.id:
            raise PermissionDenied("This vulnerability is not assigned to you.")
        if vuln.client_status not in _ACTIONABLE_CLIENT_STATUSES:
            raise InvalidTransition(f"Cannot {action} a vulnerability that is {vuln.client_status}.")
        return vuln

    def _validate_client(self, client_id: int, org_id: int) -> User:
        client = self.users.get_by_id(client_id)
        if client is None or client.role != CLIENT or not client.can_login:
            raise ValidationFailed(f"User {client_id} is not an active client.")
        if client.organization_id != org_id:
            raise ValidationFailed(f"User {client_id} does not belong to this organization.")
        return client

    def _validate_member(self, member_id: int) -> User:
        member = self.users.get_by_id(member_id)
        if member is None or member.role != SECURITY_TEAM or not member.can_login:
            raise ValidationFailed(f"User {member_id} is not an active security-team member.")
        return member
