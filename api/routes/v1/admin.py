"""
api/routes/v1/admin.py -- Account approval and portal administration.

Routes (all admin-only; role changes and settings need Super-admin):
  GET   /api/v1/admin/users                  -- list users (role/status/org/suspended/search filters)
  PATCH /api/v1/admin/users/{id}             -- update role, full_name, organization, designation
  POST  /api/v1/admin/approve-user           -- approve a pending user or access request
  POST  /api/v1/admin/reject-user            -- reject a pending user or access request
  POST  /api/v1/admin/suspend-user           -- suspend / unsuspend an account
  GET   /api/v1/admin/access-requests        -- list organization access requests
  GET   /api/v1/admin/sync-profiles          -- approved requests with no account
  POST  /api/v1/admin/sync-profiles          -- create the missing accounts
  POST  /api/v1/admin/approve-email-access   -- approve every request in an email_access_request
  POST  /api/v1/admin/user-emails            -- {user_id: email} lookup
  POST  /api/v1/admin/update-organization    -- set an organization's admin notes
  GET   /api/v1/admin/settings               -- registration switches (Super-admin)
  PATCH /api/v1/admin/settings               -- update registration switches (Super-admin)

Lockout rules: nobody can suspend themselves, and the last approved,
unsuspended Super-admin can be neither suspended nor demoted.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    AccessRequestResponse,
    AdminUserPatch,
    ApprovalResult,
    ApprovalStatusEnum,
    ApproveEmailAccessRequest,
    ApproveEmailAccessResponse,
    AppSettingsPatch,
    AppSettingsResponse,
    OrganizationNotesRequest,
    OrganizationResponse,
    RoleEnum,
    SuspendUserRequest,
    SyncProfilesResponse,
    UserEmailsRequest,
    UserOrRequestTarget,
    UserResponse,
)
from auth.dependencies import require_admin, require_super_admin
from auth.models import APPROVED, REJECTED, SUPER_ADMIN, AccessRequest, User
from auth.store import UserStore
from portal.models import Notification
from portal.store import PortalStore

logger = logging.getLogger("vaptportal.api")

router = APIRouter(dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    role: Optional[RoleEnum] = None,
    status: Optional[ApprovalStatusEnum] = None,
    organization_id: Optional[int] = None,
    suspended: Optional[bool] = None,
    search: Optional[str] = None,
    current_user: User = Depends(require_admin),
) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users(
        role=role.value if role else None,
        status=status.value if status else None,
        organization_id=organization_id,
        suspended=suspended,
        search=search,
    )
    return [UserResponse.from_domain(u) for u in users]


@router.patch("/admin/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: AdminUserPatch,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Update another account's profile.

    Only a Super-admin may change roles. organization_id must name an
    existing organization. Demoting the last active Super-admin is refused.
    """
    user_store: UserStore = request.app.state.user_store
    portal_store: PortalStore = request.app.state.portal_store
    target = _get_user_or_404(user_store, user_id)

    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if "role" in updates:
        if current_user.role != SUPER_ADMIN:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Only a Super-admin can change roles."},
            )
        if updates["role"] is None:
            raise HTTPException(
                status_code=422,
                detail={"code": "validation_error", "message": "role cannot be null."},
            )
        updates["role"] = updates["role"].value
        if target.role == SUPER_ADMIN and updates["role"] != SUPER_ADMIN:
            _ensure_not_last_super_admin(user_store, target)
    if updates.get("organization_id") is not None:
        if portal_store.get_organization(updates["organization_id"]) is None:
            raise HTTPException(
                status_code=400,
                detail={"code": "invalid_organization", "message": "Organization does not exist."},
            )

    user_store.update_user(user_id, **updates)
    logger.info("User %d updated by %d: %s", user_id, current_user.id, sorted(updates))
    return UserResponse.from_domain(user_store.get_by_id(user_id))


@router.post("/admin/approve-user", response_model=ApprovalResult)
def approve_user(
    request: Request,
    body: UserOrRequestTarget,
    current_user: User = Depends(require_admin),
) -> ApprovalResult:
    """Approve a pending account, or create one from a pending access request.

    Approving an access request creates the account and flips the request in
    one transaction. An email that already has an account is a 409.
    """
    user_store: UserStore = request.app.state.user_store
    portal_store: PortalStore = request.app.state.portal_store

    if body.user_id is not None:
        target = _get_user_or_404(user_store, body.user_id)
        if target.status == APPROVED:
            raise HTTPException(
                status_code=409,
                detail={"code": "already_approved", "message": "User is already approved."},
            )
        user_store.update_user(target.id, status=APPROVED)
        user_id = target.id
    else:
        req = _get_access_request_or_404(user_store, body.request_id)
        try:
            new_id = user_store.approve_access_request(req.id)
        except IntegrityError as exc:
            raise HTTPException(
                status_code=409,
                detail={"code": "conflict", "message": f"An account for {req.email} already exists."},
            ) from exc
        if new_id is None:
            raise HTTPException(
                status_code=409,
                detail={"code": "not_pending", "message": "Access request is no longer pending."},
            )
        user_id = new_id

    portal_store.create_notification(
        Notification(
            type="approval",
            user_id=user_id,
            actor_id=current_user.id,
            payload={"user_id": user_id, "request_id": body.request_id},
        )
    )
    logger.info("User %d approved by %d", user_id, current_user.id)
    return ApprovalResult(user=UserResponse.from_domain(user_store.get_by_id(user_id)), request_id=body.request_id)


@router.post("/admin/reject-user", response_model=ApprovalResult | AccessRequestResponse)
def reject_user(
    request: Request,
    body: UserOrRequestTarget,
    current_user: User = Depends(require_admin),
) -> ApprovalResult | AccessRequestResponse:
    user_store: UserStore = request.app.state.user_store

    if body.user_id is not None:
        target = _get_user_or_404(user_store, body.user_id)
        if target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_rejection", "message": "You cannot reject your own account."},
            )
        if target.status == APPROVED and target.role == SUPER_ADMIN:
            _ensure_not_last_super_admin(user_store, target)
        user_store.update_user(target.id, status=REJECTED)
        logger.info("User %d rejected by %d", target.id, current_user.id)
        return ApprovalResult(user=UserResponse.from_domain(user_store.get_by_id(target.id)))

    req = _get_access_request_or_404(user_store, body.request_id)
    if not user_store.reject_access_request(req.id):
        raise HTTPException(
            status_code=409,
            detail={"code": "not_pending", "message": "Access request is no longer pending."},
        )
    logger.info("Access request %d rejected by %d", req.id, current_user.id)
    return AccessRequestResponse.from_domain(user_store.get_access_request(req.id))


@router.post("/admin/suspend-user", response_model=UserResponse)
def suspend_user(
    request: Request,
    body: SuspendUserRequest,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    target = _get_user_or_404(user_store, body.user_id)
    if body.suspended:
        if target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_suspension", "message": "You cannot suspend your own account."},
            )
        if target.role == SUPER_ADMIN:
            _ensure_not_last_super_admin(user_store, target)
    user_store.update_user(target.id, suspended=body.suspended)
    logger.info("User %d %s by %d", target.id, "suspended" if body.suspended else "unsuspended", current_user.id)
    return UserResponse.from_domain(user_store.get_by_id(target.id))


@router.post("/admin/user-emails", response_model=dict[int, str])
def user_emails(
    request: Request,
    body: UserEmailsRequest,
    current_user: User = Depends(require_admin),
) -> dict[int, str]:
    user_store: UserStore = request.app.state.user_store
    return user_store.get_emails(body.user_ids)


# ---------------------------------------------------------------------------
# Access requests
# ---------------------------------------------------------------------------


@router.get("/admin/access-requests", response_model=list[AccessRequestResponse])
def list_access_requests(
    request: Request,
    status: Optional[ApprovalStatusEnum] = None,
    organization_id: Optional[int] = None,
    current_user: User = Depends(require_admin),
) -> list[AccessRequestResponse]:
    user_store: UserStore = request.app.state.user_store
    requests = user_store.list_access_requests(status=status.value if status else None, organization_id=organization_id)
    return [AccessRequestResponse.from_domain(r) for r in requests]


@router.get("/admin/sync-profiles", response_model=SyncProfilesResponse)
def find_orphaned_profiles(
    request: Request,
    current_user: User = Depends(require_admin),
) -> SyncProfilesResponse:
    """List approved access requests whose account was never created."""
    user_store: UserStore = request.app.state.user_store
    return SyncProfilesResponse(
        orphaned=[AccessRequestResponse.from_domain(r) for r in user_store.find_orphaned_approvals()]
    )


@router.post("/admin/sync-profiles", response_model=SyncProfilesResponse)
def sync_profiles(
    request: Request,
    current_user: User = Depends(require_admin),
) -> SyncProfilesResponse:
    """Create the missing account for every orphaned approval.

    Failures are collected per request and reported, not raised.
    """
    user_store: UserStore = request.app.state.user_store
    orphaned = user_store.find_orphaned_approvals()
    created: list[int] = []
    errors: list[str] = []
    for req in orphaned:
        try:
            created.append(user_store.create_user_for_request(req))
        except IntegrityError:
            errors.append(f"{req.email}: account already exists")
    if created:
        logger.info("sync-profiles created %d accounts", len(created))
    return SyncProfilesResponse(
        orphaned=[AccessRequestResponse.from_domain(r) for r in orphaned],
        created=created,
        errors=errors,
    )


@router.post("/admin/approve-email-access", response_model=ApproveEmailAccessResponse)
def approve_email_access(
    request: Request,
    body: ApproveEmailAccessRequest,
    current_user: User = Depends(require_admin),
) -> ApproveEmailAccessResponse:
    """Approve every access request listed in an email_access_request notification.

    Each request is approved on its own; one failure does not stop the rest.
    The notification is marked read and an "approval" broadcast records who
    was let in.
    """
    user_store: UserStore = request.app.state.user_store
    portal_store: PortalStore = request.app.state.portal_store

    notification = portal_store.get_notification(body.notification_id)
    if notification is None or notification.type != "email_access_request":
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Email access request notification not found."},
        )
    request_ids = notification.payload.get("request_ids") or []
    if not request_ids:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_payload", "message": "Notification lists no access requests."},
        )

    created: list[int] = []
    approved_emails: list[str] = []
    errors: list[str] = []
    for request_id in request_ids:
        req = user_store.get_access_request(request_id)
        if req is None:
            errors.append(f"request {request_id}: not found")
            continue
        try:
            new_id = user_store.approve_access_request(request_id)
        except IntegrityError:
            errors.append(f"{req.email}: account already exists")
            continue
        if new_id is None:
            errors.append(f"{req.email}: request is not pending")
            continue
        created.append(new_id)
        approved_emails.append(req.email)

    portal_store.mark_notification_read(notification.id, current_user.id, include_broadcast=True)
    portal_store.create_notification(
        Notification(
            type="approval",
            actor_id=current_user.id,
            organization_id=notification.organization_id,
            payload={"notification_id": notification.id, "emails_approved": approved_emails},
        )
    )
    logger.info("approve-email-access %d: %d created, %d errors", notification.id, len(created), len(errors))
    return ApproveEmailAccessResponse(created=created, errors=errors)


# ---------------------------------------------------------------------------
# Organizations and settings
# ---------------------------------------------------------------------------


@router.post("/admin/update-organization", response_model=OrganizationResponse)
def update_organization_notes(
    request: Request,
    body: OrganizationNotesRequest,
    current_user: User = Depends(require_admin),
) -> OrganizationResponse:
    portal_store: PortalStore = request.app.state.portal_store
    if not portal_store.update_organization(body.organization_id, notes=body.notes):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Organization not found."},
        )
    return OrganizationResponse.from_domain(portal_store.get_organization(body.organization_id))


@router.get("/admin/settings", response_model=AppSettingsResponse)
def get_app_settings(
    request: Request,
    current_user: User = Depends(require_super_admin),
) -> AppSettingsResponse:
    user_store: UserStore = request.app.state.user_store
    return AppSettingsResponse(**user_store.get_app_settings())


@router.patch("/admin/settings", response_model=AppSettingsResponse)
def update_app_settings(
    request: Request,
    body: AppSettingsPatch,
    current_user: User = Depends(require_super_admin),
) -> AppSettingsResponse:
    user_store: UserStore = request.app.state.user_store
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    user_store.update_app_settings(**updates)
    logger.info("App settings changed by %d: %s", current_user.id, updates)
    return AppSettingsResponse(**user_store.get_app_settings())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_user_or_404(user_store: UserStore, user_id: int) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return user


def _get_access_request_or_404(user_store: UserStore, request_id: int) -> AccessRequest:
    req = user_store.get_access_request(request_id)
    if req is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Access request not found."},
        )
    return req


def _ensure_not_last_super_admin(user_store: UserStore, target: User) -> None:
    """Refuse to take away the last Super-admin who can still log in."""
    if target.can_login and user_store.count_active_super_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_super_admin", "message": "Cannot remove the last active Super-admin."},
        )


