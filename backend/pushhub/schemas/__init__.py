"""Pydantic schemas for API request/response models."""
from .device import (
    NotificationSettings,
    DeviceRegisterRequest,
    DeviceResponse,
    DeviceTokenRequest,
    SettingsUpdateResponse,
)
from .notification import (
    SendNotificationRequest,
    DispatchSummaryResponse,
    CampaignResponse,
    CampaignPage,
    InboxItem,
    InboxPage,
)

__all__ = [
    "NotificationSettings",
    "DeviceRegisterRequest",
    "DeviceResponse",
    "DeviceTokenRequest",
    "SettingsUpdateResponse",
    "SendNotificationRequest",
    "DispatchSummaryResponse",
    "CampaignResponse",
    "CampaignPage",
    "InboxItem",
    "InboxPage",
]
