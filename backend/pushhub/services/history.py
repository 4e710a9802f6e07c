"""Read-only campaign queries: admin history, user inbox, statistics."""
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import NotFoundError
from ..models.campaign import Campaign, CampaignStatus, CampaignTarget
from .registry import device_registry


def _page_bounds(page: int, per_page: int, total: int) -> Tuple[int, int]:
    """Return (offset, total_pages) for a 1-based page."""
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    offset = (page - 1) * per_page
    return offset, total_pages


async def _paginate(session: AsyncSession, query, page: int, per_page: int) -> Tuple[List[Campaign], int, int]:
    count_result = await session.execute(
        select(func.count()).select_from(query.order_by(None).subquery())
    )
    total = count_result.scalar() or 0
    offset, total_pages = _page_bounds(page, per_page, total)

    result = await session.execute(
        query.order_by(Campaign.created_at.desc(), Campaign.id.desc())
        .offset(offset)
        .limit(per_page)
    )
    return list(result.scalars().all()), total, total_pages


async def list_campaigns(
    session: AsyncSession,
    status: Optional[str] = None,
    notification_type: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> Tuple[List[Campaign], int, int]:
    """Campaign history, newest first.

    Returns:
        Tuple of (campaigns on this page, total matching, total pages)
    """
    query = select(Campaign)
    if status:
        query = query.where(Campaign.status == status)
    if notification_type:
        query = query.where(Campaign.type == notification_type)
    return await _paginate(session, query, page, per_page)


async def user_inbox(
    session: AsyncSession,
    user_id: str,
    notification_type: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> Tuple[List[Campaign], int, int]:
    """Campaigns addressed to a user: explicit targets plus broadcasts, newest first."""
    targeted = select(CampaignTarget.campaign_id).where(CampaignTarget.user_id == str(user_id))
    query = select(Campaign).where(
        or_(Campaign.is_broadcast.is_(True), Campaign.id.in_(targeted))
    )
    if notification_type:
        query = query.where(Campaign.type == notification_type)
    return await _paginate(session, query, page, per_page)


async def get_campaign(session: AsyncSession, campaign_id: int) -> Campaign:
    result = await session.execute(select(Campaign).where(Campaign.id == campaign_id))
    campaign = result.scalar_one_or_none()
    if campaign is None:
        raise NotFoundError("Campaign", campaign_id)
    return campaign


async def campaign_stats(session: AsyncSession) -> dict:
    """Totals across all campaigns plus device counts per platform."""
    result = await session.execute(
        select(
            func.count(Campaign.id),
            func.coalesce(func.sum(Campaign.sent_count), 0),
            func.coalesce(func.sum(Campaign.failed_count), 0),
            func.coalesce(func.sum(Campaign.total_targets), 0),
        )
    )
    total_campaigns, total_sent, total_failed, total_targets = result.one()

    # Average only over campaigns that reached at least one device
    rates_result = await session.execute(
        select(Campaign.sent_count, Campaign.total_targets).where(Campaign.total_targets > 0)
    )
    rates = [sent / total for sent, total in rates_result.all()]
    avg_success_rate = round(sum(rates) / len(rates) * 100, 2) if rates else 0.0

    status_result = await session.execute(
        select(Campaign.status, func.count(Campaign.id)).group_by(Campaign.status)
    )
    by_status = {s.value: 0 for s in CampaignStatus}
    for status, count in status_result.all():
        by_status[status] = count

    return {
        "campaigns": {
            "total": total_campaigns or 0,
            "total_sent": int(total_sent),
            "total_failed": int(total_failed),
            "total_targets": int(total_targets),
            "avg_success_rate": avg_success_rate,
            "by_status": by_status,
        },
        "devices": await device_registry.count_by_platform(session),
    }
