# Notifications Router for TrustWork
# The per-user notification inbox

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List

from auth.decorators import require_permission
from auth.principal import Principal
from auth.roles import Permission
from database.config import get_db
from schemas.notifications import MarkAllReadResponse, NotificationResponse, UnreadCountResponse
from services.notification_service import NotificationService, get_notification_service
from services.persistence import transaction

router = APIRouter(prefix="/notifications", tags=["Notifications"])

inbox_user = require_permission(Permission.VIEW_NOTIFICATIONS)


def get_service(db: Session = Depends(get_db)) -> NotificationService:
    return get_notification_service(db)


# ============================================================================
# NOTIFICATION ENDPOINTS
# ============================================================================

@router.get("", response_model=List[NotificationResponse])
def get_notifications(
    principal: Principal = Depends(inbox_user),
    service: NotificationService = Depends(get_service),
    unread_only: bool = Query(False, description="Only return unread notifications"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """
    Get the user's notifications, newest first.
    """
    return service.list(principal, unread_only=unread_only, page=page, limit=limit)


@router.get("/unread-count", response_model=UnreadCountResponse)
def get_unread_count(
    principal: Principal = Depends(inbox_user),
    service: NotificationService = Depends(get_service),
):
    return UnreadCountResponse(unread_count=service.get_unread_count(principal))


@router.post("/{notification_id}/read", response_model=NotificationResponse)
def mark_as_read(
    notification_id: str,
    principal: Principal = Depends(inbox_user),
    service: NotificationService = Depends(get_service),
):
    with transaction(service.db):
        notification = service.mark_read(principal, notification_id)
    return notification


@router.post("/read-all", response_model=MarkAllReadResponse)
def mark_all_as_read(
    principal: Principal = Depends(inbox_user),
    service: NotificationService = Depends(get_service),
):
    """
    Mark every unread notification read.
    """
    with transaction(service.db):
        marked = service.mark_all_read(principal)
    return MarkAllReadResponse(marked=marked)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
    notification_id: str,
    principal: Principal = Depends(inbox_user),
    service: NotificationService = Depends(get_service),
):
    with transaction(service.db):
        service.delete(principal, notification_id)
