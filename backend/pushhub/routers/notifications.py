"""Notification campaign API: send, history, inbox, statistics."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_user_id, require_admin
from ..database import get_db
from ..models.campaign import CampaignStatus
from ..schemas.notification import (
    CampaignPage,
    CampaignResponse,
    DispatchSummaryResponse,
    FailureReason,
    InboxItem,
    InboxPage,
    SendNotificationRequest,
)
from ..services import history
from ..services.dispatcher import CampaignDraft, DispatchEngine, dispatch_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def get_dispatch_engine() -> DispatchEngine:
    """Dependency returning the configured dispatch engine."""
    return dispatch_engine


@router.get("/health")
async def notification_health():
    """Liveness check for the notification service."""
    return {
        "success": True,
        "message": "Notification service is running",
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


@router.post("/send", response_model=DispatchSummaryResponse)
async def send_notification(
    request: SendNotificationRequest,
    sender: str = Depends(require_admin),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    db: AsyncSession = Depends(get_db),
):
    """Send a notification and wait for every device to be tried.

    A campaign that finds no eligible devices is still a completed request;
    it comes back with status ``no_targets`` and ``success`` false.
    """
    draft = CampaignDraft(
        title=request.title,
        body=request.body,
        data=request.data,
        target_users=request.target_users,
        broadcast=request.broadcast,
        type=request.type,
        image_url=request.image_url,
        deep_link=request.deep_link,
        actions=[a.model_dump(exclude_none=True) for a in request.actions],
        category=request.category,
        sound=request.sound,
        badge=request.badge,
        created_by=sender,
    )
    summary = await engine.submit(db, draft)

    if summary.status == CampaignStatus.NO_TARGETS:
        message = "No active devices eligible for this notification"
    else:
        message = f"Notification sent to {summary.sent_count}/{summary.total_targets} devices"

    return DispatchSummaryResponse(
        success=summary.status != CampaignStatus.NO_TARGETS,
        message=message,
        campaign_id=summary.campaign_id,
        status=summary.status.value,
        total_targets=summary.total_targets,
        sent_count=summary.sent_count,
        failed_count=summary.failed_count,
        success_rate=summary.success_rate,
        invalidated_tokens_count=len(summary.invalidated_tokens),
        invalidated_tokens=summary.invalidated_tokens,
        failure_reasons=[FailureReason(**f) for f in summary.failure_reasons],
    )


@router.get("/history", response_model=CampaignPage)
async def get_notification_history(
    status: Optional[str] = Query(default=None, pattern="^(pending|sent|failed|partial|no_targets)$"),
    type: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Get paginated campaign history, newest first."""
    campaigns, total, total_pages = await history.list_campaigns(
        db, status=status, notification_type=type, page=page, per_page=per_page
    )
    return CampaignPage(
        items=[CampaignResponse.model_validate(c) for c in campaigns],
        total=total,
        page=page,
        per_page=per_page,
        total_pages=total_pages,
    )


@router.get("/history/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: int,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Get one campaign with its delivery counters."""
    campaign = await history.get_campaign(db, campaign_id)
    return CampaignResponse.model_validate(campaign)


@router.get("/stats")
async def get_notification_stats(
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Get campaign totals and device counts per platform."""
    return {"success": True, "data": await history.campaign_stats(db)}


# Older admin panel path
router.add_api_route("/admin/stats", get_notification_stats, methods=["GET"])


@router.get("/user", response_model=InboxPage)
async def get_user_notifications(
    type: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's notifications: those sent to them and broadcasts."""
    campaigns, total, total_pages = await history.user_inbox(
        db, user_id, notification_type=type, page=page, per_page=per_page
    )
    return InboxPage(
        items=[InboxItem.model_validate(c) for c in campaigns],
        total=total,
        page=page,
        per_page=per_page,
        total_pages=total_pages,
    )
