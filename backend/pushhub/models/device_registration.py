"""DeviceRegistration model - push tokens and their owners."""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, JSON, String

from ..database import Base


PLATFORMS = ("ios", "android")

NOTIFICATION_TYPES = ("general", "music", "playlist", "user", "promotion")

# Why a registration was retired
INVALIDATION_REASONS = ("token_expired", "app_uninstalled", "user_disabled", "other")


def default_notification_settings() -> dict:
    """Opt-in settings for a fresh registration: everything enabled."""
    return {
        "enabled": True,
        "sound": True,
        "vibration": True,
        "badge": True,
        "types": {name: True for name in NOTIFICATION_TYPES},
    }


def merge_notification_settings(settings: dict | None) -> dict:
    """Overlay client-supplied settings on the defaults.

    ``enabled`` is only false when the client says so explicitly.
    """
    merged = default_notification_settings()
    if not settings:
        return merged
    for key, value in settings.items():
        if key == "types" and isinstance(value, dict):
            merged["types"].update({k: bool(v) for k, v in value.items()})
        elif key in merged:
            merged[key] = bool(value)
    merged["enabled"] = settings.get("enabled") is not False
    return merged


class DeviceRegistration(Base):
    """A device that can receive push notifications, keyed by its push token."""

    __tablename__ = "device_registrations"

    token = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)  # ios, android
    device_id = Column(String, nullable=False)
    device_model = Column(String, default="unknown")
    os_version = Column(String, default="unknown")
    app_version = Column(String, default="1.0.0")
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    notification_settings = Column(JSON, default=default_notification_settings)
    last_active_at = Column(DateTime, default=datetime.utcnow, index=True)
    invalidated_at = Column(DateTime, nullable=True)
    invalidation_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def accepts(self, notification_type: str) -> bool:
        """True if this registration is opted in to the given notification type."""
        settings = self.notification_settings or {}
        if settings.get("enabled", True) is False:
            return False
        types = settings.get("types") or {}
        return types.get(notification_type, True) is not False
