"""Notification campaign schemas for API."""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class NotificationAction(BaseModel):
    """An action button attached to a notification."""
    action: str
    title: str
    url: Optional[str] = None


class SendNotificationRequest(BaseModel):
    """Schema for sending a notification campaign.

    Omitting ``target_users`` sends to every active device unless
    ``broadcast`` is explicitly false.
    """
    title: Optional[str] = None
    body: Optional[str] = None
    data: dict = Field(default_factory=dict)
    target_users: Optional[List[str]] = None
    broadcast: Optional[bool] = None
    type: str = "general"
    image_url: Optional[str] = None
    deep_link: Optional[str] = None
    actions: List[NotificationAction] = Field(default_factory=list)
    category: str = "default"
    sound: str = "default"
    badge: int = Field(default=1, ge=0)


class FailureReason(BaseModel):
    """A failed device, token truncated."""
    token: str
    result: str  # transient_failure, permanent_failure
    code: Optional[str] = None
    error: Optional[str] = None


class DispatchSummaryResponse(BaseModel):
    """Outcome of a send request."""
    success: bool
    message: str
    campaign_id: int
    status: str  # sent, partial, failed, no_targets
    total_targets: int
    sent_count: int
    failed_count: int
    success_rate: float
    invalidated_tokens_count: int
    invalidated_tokens: List[str] = Field(default_factory=list)
    failure_reasons: List[FailureReason] = Field(default_factory=list)


class CampaignResponse(BaseModel):
    """Schema for a campaign in history listings."""
    id: int
    title: str
    body: str
    data: dict = Field(default_factory=dict)
    type: str
    is_broadcast: bool
    target_user_ids: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    deep_link: Optional[str] = None
    actions: list = Field(default_factory=list)
    category: str
    sound: str
    badge: int
    created_by: str
    total_targets: int
    sent_count: int
    failed_count: int
    success_rate: float
    status: str
    created_at: datetime
    sent_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InboxItem(BaseModel):
    """A campaign as seen in a user's inbox."""
    id: int
    title: str
    body: str
    type: str
    image_url: Optional[str] = None
    deep_link: Optional[str] = None
    data: dict = Field(default_factory=dict)
    created_at: datetime

    class Config:
        from_attributes = True


class CampaignPage(BaseModel):
    """Paginated campaign history."""
    items: List[CampaignResponse]
    total: int
    page: int
    per_page: int
    total_pages: int


class InboxPage(BaseModel):
    """Paginated user inbox."""
    items: List[InboxItem]
    total: int
    page: int
    per_page: int
    total_pages: int
