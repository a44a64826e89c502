"""
api/routes/v1/notifications.py -- Notification inbox.

Routes:
  GET  /api/v1/notifications             -- caller's inbox (admins also see broadcasts)
  POST /api/v1/notifications/{id}/read   -- mark one read (ownership checked in the store)
  POST /api/v1/notifications/read-all    -- mark the whole inbox read

Notifications are never delivered anywhere else; this inbox is the only reader.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import MarkAllReadResponse, NotificationResponse
from auth.dependencies import get_current_user
from auth.models import User
from portal.store import PortalStore

router = APIRouter()


@router.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(
    request: Request,
    unread_only: bool = False,
    limit: int = 100,
    current_user: User = Depends(get_current_user),
) -> list[NotificationResponse]:
    portal_store: PortalStore = request.app.state.portal_store
    notifications = portal_store.list_notifications_for_user(
        current_user.id,
        include_broadcast=current_user.is_admin,
        unread_only=unread_only,
        limit=max(1, min(limit, 500)),
    )
    return [NotificationResponse.from_domain(n) for n in notifications]


# read-all is registered before /{notification_id}/read; the paths differ in
# shape, so order only matters for readability.
@router.post("/notifications/read-all", response_model=MarkAllReadResponse)
def mark_all_read(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> MarkAllReadResponse:
    portal_store: PortalStore = request.app.state.portal_store
    updated = portal_store.mark_all_read(current_user.id, include_broadcast=current_user.is_admin)
    return MarkAllReadResponse(updated=updated)


@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    request: Request,
    notification_id: int,
    current_user: User = Depends(get_current_user),
) -> NotificationResponse:
    """Mark a notification read. Someone else's notification reports 404."""
    portal_store: PortalStore = request.app.state.portal_store
    if not portal_store.mark_notification_read(notification_id, current_user.id, include_broadcast=current_user.is_admin):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Notification not found."},
        )
    return NotificationResponse.from_domain(portal_store.get_notification(notification_id))
