"""Database models."""
from .device_registration import DeviceRegistration
from .campaign import Campaign, CampaignTarget, CampaignStatus

__all__ = ["DeviceRegistration", "Campaign", "CampaignTarget", "CampaignStatus"]
