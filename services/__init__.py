# Services Module for TrustWork
# Contains business logic services

from services.notification_service import NotificationFanout, NotificationService, get_notification_service

__all__ = [
    'NotificationFanout',
    'NotificationService',
    'get_notification_service',
]
