"""
api/routes/v1/organizations.py -- Organization signup, listing and administration.

Routes:
  POST  /api/v1/organizations/signup              -- public client-organization signup
  GET   /api/v1/organizations                     -- list (scoped by role)
  GET   /api/v1/organizations/{id}                -- detail (scoped by role)
  PATCH /api/v1/organizations/{id}                -- update status / notes / contact (admin)
  GET   /api/v1/organizations/{id}/assignments    -- security-team assignments
  GET   /api/v1/organizations/{id}/activity       -- latest activity feed (admin)
  GET   /api/v1/organizations/{id}/users          -- client accounts of the organization (admin)

Scoping: admins see every organization, security-team members the ones they
are assigned to, clients their own. Anything outside scope is a 404.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import SIGNUP_LIMIT, limiter
from api.models import (
    ActivityItem,
    ApprovalStatusEnum,
    AssignmentResponse,
    OrganizationResponse,
    OrganizationSignupRequest,
    OrganizationSignupResponse,
    OrganizationUpdate,
    UserResponse,
)
from auth.dependencies import get_current_user, require_admin
from auth.models import CLIENT, PENDING, AccessRequest, User
from auth.store import UserStore
from auth.tokens import hash_password
from portal.models import ActivityLog, Notification, Organization
from portal.store import PortalStore
from portal.workflow import Workflow

logger = logging.getLogger("vaptportal.api")

# Auth policy:
# - POST /organizations/signup: public, rate limited, gated by organization_signup_enabled
# - everything else: requires auth; admin-only routes use require_admin
router = APIRouter()


@limiter.limit(SIGNUP_LIMIT)
@router.post("/organizations/signup", response_model=OrganizationSignupResponse, status_code=201)
def organization_signup(request: Request, body: OrganizationSignupRequest) -> OrganizationSignupResponse:
    """Register a client organization and request accounts for its users.

    Creates a pending organization and one pending access request per listed
    user. All requests share the submitted password (stored as one bcrypt
    hash). Admins receive two broadcasts: organization_signup and
    email_access_request; the latter lists the request IDs so it can be
    approved in one step via POST /admin/approve-email-access.
    """
    user_store: UserStore = request.app.state.user_store
    portal_store: PortalStore = request.app.state.portal_store

    if not user_store.get_app_settings()["organization_signup_enabled"]:
        raise HTTPException(
            status_code=403,
            detail={"code": "signup_disabled", "message": "Organization signup is disabled."},
        )
    taken = [u.email for u in body.users if user_store.get_by_email(u.email) is not None]
    if taken:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f"Accounts already exist for: {', '.join(taken)}."},
        )
    # Approving a second request for the same email could never create the account.
    requested = [u.email for u in body.users if user_store.list_access_requests(status=PENDING, email=u.email)]
    if requested:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f"Access is already pending for: {', '.join(requested)}."},
        )

    services = body.services.model_dump(mode="json")
    org_id = portal_store.create_organization(
        Organization(
            name=body.name,
            contact_email=body.contact_email.lower(),
            contact_phone=body.contact_phone,
            address=body.address,
            services=services,
        )
    )

    hashed = hash_password(body.password)
    request_ids = [
        user_store.create_access_request(
            AccessRequest(
                email=entry.email,
                full_name=entry.full_name,
                organization_id=org_id,
                role=CLIENT,
                hashed_password=hashed,
            )
        )
        for entry in body.users
    ]
    emails = [entry.email.lower() for entry in body.users]

    portal_store.log_activity(
        ActivityLog(
            action="organization_signup",
            entity_type="organization",
            entity_id=org_id,
            organization_id=org_id,
            detail={"name": body.name, "users": len(request_ids)},
        )
    )
    portal_store.create_notification(
        Notification(
            type="organization_signup",
            payload={
                "organization_id": org_id,
                "organization_name": body.name,
                "contact_email": body.contact_email.lower(),
                "services": [key for key, value in services.items() if value],
            },
        )
    )
    portal_store.create_notification(
        Notification(
            type="email_access_request",
            payload={
                "organization_id": org_id,
                "organization_name": body.name,
                "request_ids": request_ids,
                "emails": emails,
            },
        )
    )
    logger.info("Organization %d signed up with %d access requests", org_id, len(request_ids))
    return OrganizationSignupResponse(organization_id=org_id, access_request_ids=request_ids, status="pending")


@router.get("/organizations", response_model=list[OrganizationResponse])
def list_organizations(
    request: Request,
    status: Optional[ApprovalStatusEnum] = None,
    current_user: User = Depends(get_current_user),
) -> list[OrganizationResponse]:
    workflow: Workflow = request.app.state.workflow
    visible = workflow.visible_organization_ids(current_user)
    orgs = workflow.store.list_organizations(status=status.value if status else None, ids=visible)
    return [OrganizationResponse.from_domain(o) for o in orgs]


@router.get("/organizations/{org_id}", response_model=OrganizationResponse)
def get_organization(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> OrganizationResponse:
    workflow: Workflow = request.app.state.workflow
    return OrganizationResponse.from_domain(workflow.get_organization(current_user, org_id))


@router.patch("/organizations/{org_id}", response_model=OrganizationResponse)
def update_organization(
    request: Request,
    org_id: int,
    body: OrganizationUpdate,
    current_user: User = Depends(require_admin),
) -> OrganizationResponse:
    """Update an organization. A status change goes through the workflow so it is audited."""
    workflow: Workflow = request.app.state.workflow
    org = workflow.get_organization(current_user, org_id)
    updates = body.model_dump(exclude_unset=True, exclude={"status"})
    if body.status is None and not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if updates:
        if "contact_email" in updates and updates["contact_email"]:
            updates["contact_email"] = updates["contact_email"].lower()
        workflow.store.update_organization(org_id, **updates)
    if body.status is not None and body.status.value != org.status:
        workflow.set_organization_status(current_user, org_id, body.status.value)
    return OrganizationResponse.from_domain(workflow.store.get_organization(org_id))


@router.get("/organizations/{org_id}/assignments", response_model=list[AssignmentResponse])
def list_organization_assignments(
    request: Request,
    org_id: int,
    current_user: User = Depends(get_current_user),
) -> list[AssignmentResponse]:
    workflow: Workflow = request.app.state.workflow
    workflow.get_organization(current_user, org_id)
    return [AssignmentResponse.from_domain(a) for a in workflow.store.list_assignments(organization_id=org_id)]


@router.get("/organizations/{org_id}/activity", response_model=list[ActivityItem])
def organization_activity(
    request: Request,
    org_id: int,
    limit: int = 10,
    current_user: User = Depends(require_admin),
) -> list[ActivityItem]:
    """Return the newest audit entries and notifications for an organization, merged."""
    workflow: Workflow = request.app.state.workflow
    workflow.get_organization(current_user, org_id)
    limit = max(1, min(limit, 100))
    items = [ActivityItem.from_activity(a) for a in workflow.store.list_activity(organization_id=org_id, limit=limit)]
    items += [
        ActivityItem.from_notification(n)
        for n in workflow.store.list_notifications_for_organization(org_id, limit=limit)
    ]
    items.sort(key=lambda item: item.created_at, reverse=True)
    return items[:limit]


@router.get("/organizations/{org_id}/users", response_model=list[UserResponse])
def organization_users(
    request: Request,
    org_id: int,
    current_user: User = Depends(require_admin),
) -> list[UserResponse]:
    workflow: Workflow = request.app.state.workflow
    workflow.get_organization(current_user, org_id)
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_domain(u) for u in user_store.list_users(organization_id=org_id)]