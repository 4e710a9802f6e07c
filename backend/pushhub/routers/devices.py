"""Device registration API endpoints for push notifications."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_user_id
from ..database import get_db
from ..schemas.device import (
    DeviceRegisterRequest,
    DeviceResponse,
    DeviceTokenRequest,
    NotificationSettings,
    SettingsUpdateResponse,
)
from ..services.registry import device_registry
from ..utils.db_utils import mask_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["devices"])


class DeviceRegisterResponse(BaseModel):
    """Response after registering a device."""
    success: bool
    message: str
    device: DeviceResponse


class DeviceStateResponse(BaseModel):
    """Response after deactivating or refreshing a device."""
    success: bool
    message: str
    is_active: bool


@router.post("/register-token", response_model=DeviceRegisterResponse)
async def register_device(
    request: DeviceRegisterRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Register a device for push notifications.

    Upserts by token: the app calls this on every launch, and a token that
    moved to another account is reassigned to the caller.
    """
    settings = (
        request.notification_settings.model_dump()
        if request.notification_settings is not None
        else None
    )
    registration = await device_registry.register(
        db,
        token=request.token,
        user_id=user_id,
        platform=request.platform,
        device_id=request.device_id,
        metadata={
            "device_model": request.device_model,
            "os_version": request.os_version,
            "app_version": request.app_version,
        },
        settings=settings,
    )
    return DeviceRegisterResponse(
        success=True,
        message="Device registered successfully",
        device=DeviceResponse.model_validate(registration),
    )


@router.put("/settings", response_model=SettingsUpdateResponse)
async def update_notification_settings(
    request: NotificationSettings,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Apply notification settings to all of the caller's devices."""
    count = await device_registry.update_settings(db, user_id, request.model_dump())
    return SettingsUpdateResponse(success=True, devices_updated=count)


@router.post("/deactivate-token", response_model=DeviceStateResponse)
async def deactivate_device(
    request: DeviceTokenRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Stop sending to one of the caller's devices.

    The record is kept and marked inactive; repeating the call is harmless.
    """
    registration = await device_registry.get(db, request.token)
    if not registration or registration.user_id != user_id:
        raise HTTPException(status_code=404, detail="Device not found")

    await device_registry.deactivate(db, request.token, reason="user_disabled", user_id=user_id)
    logger.info(f"Device disabled by user {user_id}: {mask_token(request.token)}")
    return DeviceStateResponse(
        success=True,
        message="Device deactivated",
        is_active=False,
    )


@router.post("/heartbeat", response_model=DeviceStateResponse)
async def device_heartbeat(
    request: DeviceTokenRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Record that one of the caller's devices is still in use."""
    if not await device_registry.touch(db, request.token, user_id=user_id):
        raise HTTPException(status_code=404, detail="Device not found")

    registration = await device_registry.get(db, request.token)
    return DeviceStateResponse(
        success=True,
        message="Device activity recorded",
        is_active=bool(registration.is_active),
    )
