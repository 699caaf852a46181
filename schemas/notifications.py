# Pydantic Schemas for the notification inbox

from pydantic import BaseModel
from typing import Any, Dict, Optional
from datetime import datetime

from database.models import NotificationPriority, NotificationType


class NotificationResponse(BaseModel):
    """Schema for notification response."""
    id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    action_url: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCountResponse(BaseModel):
    unread_count: int


class MarkAllReadResponse(BaseModel):
    marked: int
