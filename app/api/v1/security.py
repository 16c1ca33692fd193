from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.v1.dependencies import (
    CurrentSession,
    get_security_service,
    rate_limited_session,
    require_session,
)
from app.security.schemas import Device, LoginActivityRecord
from app.services.security_service import SecurityService
from app.utils.error_handler import ValidationError

router = APIRouter(tags=["security"], prefix="/security")
auth_router = APIRouter(tags=["auth"], prefix="/auth")


# === Request / Response Models ===


class LogoutDeviceRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class DeviceNameRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    device_name: str


class LoginActivityResponse(BaseModel):
    activities: List[LoginActivityRecord]
    count: int


class ActiveDevicesResponse(BaseModel):
    devices: List[Device]
    count: int


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(MessageResponse):
    revoked: int


class DeviceResponse(MessageResponse):
    device: Device


# === Security Endpoints ===


@router.get("/login-activity", response_model=LoginActivityResponse)
async def get_login_activity(
    limit: Optional[int] = Query(default=None),
    current: CurrentSession = Depends(rate_limited_session),
    service: SecurityService = Depends(get_security_service),
) -> LoginActivityResponse:
    activities = await service.get_login_activity(current.user_id, limit)
    return LoginActivityResponse(activities=activities, count=len(activities))


@router.get("/active-devices", response_model=ActiveDevicesResponse)
async def get_active_devices(
    current: CurrentSession = Depends(rate_limited_session),
    service: SecurityService = Depends(get_security_service),
) -> ActiveDevicesResponse:
    devices = await service.get_active_devices(current.user_id, current.session_id)
    return ActiveDevicesResponse(devices=devices, count=len(devices))


@router.post("/logout-device", response_model=MessageResponse)
async def logout_device(
    body: LogoutDeviceRequest,
    current: CurrentSession = Depends(rate_limited_session),
    service: SecurityService = Depends(get_security_service),
) -> MessageResponse:
    if body.session_id == current.session_id:
        raise ValidationError("Use /api/v1/auth/logout to log out the current device")
    await service.logout_device(current.user_id, body.session_id)
    return MessageResponse(message="Device logged out successfully")


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all_devices(
    current: CurrentSession = Depends(rate_limited_session),
    service: SecurityService = Depends(get_security_service),
) -> LogoutAllResponse:
    revoked = await service.logout_all_devices(current.user_id)
    return LogoutAllResponse(
        message="Logged out from all devices. Please log in again.", revoked=revoked
    )


@router.patch("/device-name", response_model=DeviceResponse)
async def update_device_name(
    body: DeviceNameRequest,
    current: CurrentSession = Depends(rate_limited_session),
    service: SecurityService = Depends(get_security_service),
) -> DeviceResponse:
    device = await service.update_device_name(
        current.user_id, body.session_id, body.device_name
    )
    device.is_current = device.session_id == current.session_id
    return DeviceResponse(message="Device name updated successfully", device=device)


@router.post("/refresh-session", response_model=MessageResponse)
async def refresh_session(
    current: CurrentSession = Depends(rate_limited_session),
    service: SecurityService = Depends(get_security_service),
) -> MessageResponse:
    await service.refresh_session(current.user_id, current.session_id)
    return MessageResponse(message="Session refreshed successfully")


# === Auth Endpoints ===


@auth_router.post("/logout", response_model=MessageResponse)
async def logout(
    current: CurrentSession = Depends(require_session),
    service: SecurityService = Depends(get_security_service),
) -> MessageResponse:
    await service.logout_device(current.user_id, current.session_id)
    return MessageResponse(message="Logged out successfully")
