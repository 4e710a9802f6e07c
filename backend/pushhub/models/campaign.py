"""Campaign model - one notification send request and its delivery record."""
import enum
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship

from ..database import Base


class CampaignStatus(str, enum.Enum):
    """Lifecycle of a campaign. Everything except PENDING is terminal."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    PARTIAL = "partial"
    NO_TARGETS = "no_targets"


def resolve_status(total_targets: int, sent_count: int, failed_count: int) -> CampaignStatus:
    """Terminal status for a finished dispatch.

    Raises:
        ValueError: if the counters do not add up to the target count
    """
    if sent_count < 0 or failed_count < 0 or sent_count + failed_count != total_targets:
        raise ValueError(
            f"Inconsistent counters: sent={sent_count} failed={failed_count} total={total_targets}"
        )
    if total_targets == 0:
        return CampaignStatus.NO_TARGETS
    if failed_count == 0:
        return CampaignStatus.SENT
    if sent_count == 0:
        return CampaignStatus.FAILED
    return CampaignStatus.PARTIAL


class Campaign(Base):
    """A push notification campaign and its delivery counters."""

    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(100), nullable=False)
    body = Column(String(500), nullable=False)
    data = Column(JSON, default=dict)
    is_broadcast = Column(Boolean, default=False, nullable=False, index=True)
    type = Column(String, default="general", index=True)  # general, music, playlist, user, promotion
    image_url = Column(String, nullable=True)
    deep_link = Column(String, nullable=True)
    category = Column(String, default="default")  # Android channel id
    sound = Column(String, default="default")
    badge = Column(Integer, default=1)
    actions = Column(JSON, default=list)  # [{action, title, url}]
    created_by = Column(String, default="admin")

    total_targets = Column(Integer, default=0, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    status = Column(String, default=CampaignStatus.PENDING.value, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    sent_at = Column(DateTime, nullable=True)  # Dispatch completion

    targets = relationship("CampaignTarget", cascade="all, delete-orphan", lazy="selectin")

    @property
    def target_user_ids(self) -> list[str]:
        return [t.user_id for t in self.targets]

    @property
    def success_rate(self) -> float:
        """Delivered share of targets as a percentage."""
        if not self.total_targets:
            return 0.0
        return round(self.sent_count / self.total_targets * 100, 2)


class CampaignTarget(Base):
    """An explicit target user of a campaign."""

    __tablename__ = "campaign_targets"

    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String, primary_key=True, index=True)
