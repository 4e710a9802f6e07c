"""Device registration schemas for API."""
from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, Field


class NotificationSettings(BaseModel):
    """Per-device notification preferences."""
    enabled: bool = True
    sound: bool = True
    vibration: bool = True
    badge: bool = True
    types: Dict[str, bool] = Field(default_factory=dict)  # general, music, playlist, user, promotion


class DeviceRegisterRequest(BaseModel):
    """Request to register a device for push notifications."""
    token: str = Field(..., min_length=1)
    platform: str = Field(..., pattern="^(ios|android)$")
    device_id: str = Field(..., min_length=1)
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    notification_settings: Optional[NotificationSettings] = None


class DeviceResponse(BaseModel):
    """Current state of a registration."""
    token: str
    user_id: str
    platform: str
    device_id: str
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    is_active: bool
    notification_settings: dict
    last_active_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None
    invalidation_reason: Optional[str] = None

    class Config:
        from_attributes = True


class DeviceTokenRequest(BaseModel):
    """Request naming one of the caller's tokens."""
    token: str = Field(..., min_length=1)


class SettingsUpdateResponse(BaseModel):
    """Response after bulk-updating notification settings."""
    success: bool
    devices_updated: int
