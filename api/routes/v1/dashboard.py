"""
api/routes/v1/dashboard.py -- Role-aware summary counts for the portal home page.

One payload per caller; which groups are filled depends on role:
  - admins:         organizations, vulnerabilities, client_status and
                    verifications by status, plus pending users/requests
  - security team:  counts over assigned organizations and own submissions,
                    own verification queue, and the deadline buckets
  - clients:        counts over their organization's approved findings and
                    their own verification requests

Every group is a single GROUP BY in the store. This is a read-only route.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import DashboardResponse, DeadlinesResponse
from auth.dependencies import get_current_user
from auth.models import PENDING, SECURITY_TEAM, User
from auth.store import UserStore
from core.config import get_settings
from portal.models import APPROVED
from portal.store import PortalStore
from portal.workflow import Workflow

# Auth policy:
# - GET /api/v1/dashboard: requires auth; counts are scoped to the caller
router = APIRouter(dependencies=[Depends(get_current_user)])


@limiter.limit("60/minute")
@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> DashboardResponse:
    portal_store: PortalStore = request.app.state.portal_store
    unread = len(
        portal_store.list_notifications_for_user(
            current_user.id, include_broadcast=current_user.is_admin, unread_only=True
        )
    )

    if current_user.is_admin:
        user_store: UserStore = request.app.state.user_store
        return DashboardResponse(
            role=current_user.role,
            organizations=portal_store.status_counts("organizations", "status"),
            vulnerabilities=portal_store.status_counts("vulnerabilities", "status"),
            client_status=portal_store.status_counts("vulnerabilities", "client_status", status=APPROVED),
            verifications=portal_store.status_counts("verifications", "verification_status"),
            pending_users=len(user_store.list_users(status=PENDING)),
            pending_access_requests=len(user_store.list_access_requests(status=PENDING)),
            unread_notifications=unread,
        )

    if current_user.role == SECURITY_TEAM:
        workflow: Workflow = request.app.state.workflow
        # Same rule as Workflow.list_vulnerabilities: assigned organizations plus own submissions.
        scope = (sorted(workflow.visible_organization_ids(current_user)), current_user.id)
        deadlines = portal_store.get_deadlines(current_user.id, approaching_days=get_settings().deadline_warning_days)
        return DashboardResponse(
            role=current_user.role,
            vulnerabilities=portal_store.status_counts("vulnerabilities", "status", member_scope=scope),
            client_status=portal_store.status_counts(
                "vulnerabilities", "client_status", member_scope=scope, status=APPROVED
            ),
            verifications=portal_store.status_counts(
                "verifications", "verification_status", assigned_to_security_team=current_user.id
            ),
            unread_notifications=unread,
            deadlines=DeadlinesResponse(**deadlines),
        )

    # Client: an account without an organization sees only what is assigned to it.
    scope = (
        {"organization_id": current_user.organization_id}
        if current_user.organization_id is not None
        else {"assigned_to_client": current_user.id}
    )
    return DashboardResponse(
        role=current_user.role,
        client_status=portal_store.status_counts("vulnerabilities", "client_status", status=APPROVED, **scope),
        verifications=portal_store.status_counts(
            "verifications", "verification_status", submitted_by_client=current_user.id
        ),
        unread_notifications=unread,
    )
