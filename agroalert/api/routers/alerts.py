"""
Alert API Endpoints.

GET  /api/v1/alerts/users/{user_id}    — alerts for a user, newest first
POST /api/v1/alerts/evaluate           — run an evaluation tick now
GET  /api/v1/alerts/stats              — dispatch statistics
POST /api/v1/alerts/test-notification  — send a test message to a phone
GET  /api/v1/alerts/health             — channel / store / scheduler status
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from agroalert.alerting.channels import SendResult
from agroalert.alerting.schemas import AlertListResponse, DispatchStats, EvaluationSummary
from agroalert.api.deps import get_notification_service
from agroalert.services.notification_service import NotificationService

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


class EvaluateRequest(BaseModel):
    user_id: Optional[str] = None


class TestNotificationRequest(BaseModel):
    phone: str = Field(min_length=8, max_length=32)


@router.get("/users/{user_id}", response_model=AlertListResponse)
async def list_user_alerts(
    user_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    alerts = await service.list_alerts_for_user(user_id)
    return AlertListResponse(alerts=alerts, total=len(alerts))


@router.post("/evaluate", response_model=EvaluationSummary)
async def evaluate_now(
    body: Optional[EvaluateRequest] = None,
    service: NotificationService = Depends(get_notification_service),
):
    """Evaluate every eligible farm, or only `user_id` when given."""
    user_id = body.user_id if body else None
    return await service.trigger_evaluation_now(user_id=user_id)


@router.get("/stats", response_model=DispatchStats)
async def dispatch_stats(
    service: NotificationService = Depends(get_notification_service),
):
    return await service.get_dispatch_stats()


@router.post("/test-notification", response_model=SendResult)
async def test_notification(
    body: TestNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    return await service.send_test_notification(body.phone)


@router.get("/health")
async def alerts_health(
    service: NotificationService = Depends(get_notification_service),
):
    counts = await service.store.count_by_status()
    return {
        "status": "ok",
        "channel": service.channel.name,
        "store": type(service.store).__name__,
        "scheduler_running": service.scheduler.scheduler.running,
        "live_alerts": sum(counts.values()),
    }
