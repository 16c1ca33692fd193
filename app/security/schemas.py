"""Typed shapes shared by the session store, activity log and security service."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class SessionMetadata(BaseModel):
    """Device and location details captured when a session is created."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class SessionRecord(BaseModel):
    """A live session as stored under ``sess:<session_id>``."""

    session_id: str
    user_id: str
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    device_name: Optional[str] = None
    created_at: datetime
    last_active: datetime


class LoginActivityRecord(BaseModel):
    """Read model of one ``login_activity`` row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    auth_method: str
    two_factor_used: bool = False
    status: str
    failure_reason: Optional[str] = None
    ip_address: str
    user_agent_raw: str
    device_type: str
    browser: str
    os: str
    country: str
    city: str
    is_suspicious: bool = False
    suspicious_reasons: List[str] = Field(default_factory=list)
    created_at: datetime


class Device(BaseModel):
    """An active session presented for device management."""

    session_id: str
    device_type: str
    browser: str
    os: str
    country: str
    city: str
    ip_address: str
    device_name: Optional[str] = None
    created_at: Optional[datetime] = None
    last_active: datetime
    is_current: bool = False


class UserRecord(BaseModel):
    """The subset of a user account needed to send a notification."""

    model_config = ConfigDict(extra="ignore")

    id: str
    email: str
    name: Optional[str] = None


class NewDeviceInfo(BaseModel):
    """Payload handed to the mailer for a new-device login alert."""

    device_type: str
    browser: str
    os: str
    city: str
    country: str
    ip_address: str
    login_time: datetime

    @field_serializer("login_time")
    def _serialize_login_time(self, value: datetime) -> str:
        return value.isoformat()
