"""FastAPI dependencies for the alert API."""

from fastapi import Request

from agroalert.services.notification_service import NotificationService


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


__all__ = ["get_notification_service"]
