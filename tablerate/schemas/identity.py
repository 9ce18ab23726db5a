from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class ClientEnvironment(BaseModel):
    """Device and browser signals reported by the client.

    Every field is optional: a missing signal is handled by the identity
    probes, never by rejecting the request.
    """

    user_agent: str = ""
    platform: Optional[str] = None
    language: Optional[str] = None
    languages: list[str] = []
    locale: Optional[str] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    screen: Optional[dict[str, Any]] = None
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None
    max_touch_points: Optional[int] = None
    webgl: Optional[dict[str, Any]] = None
    canvas: Optional[str] = None
    audio: Optional[str] = None
    fonts: Optional[list[str]] = None
    storage: Optional[dict[str, bool]] = None
    webdriver: bool = False


class IdentityRecord(BaseModel):
    user_id: str
    device_digest: str
    user_name: str
    display_name: str
    is_anonymous: bool = False
    is_fallback: bool = False
    created_at: datetime
    last_active_at: datetime

    class Config:
        from_attributes = True


class IdentityCreate(BaseModel):
    name: str
    display_name: Optional[str] = None
    is_anonymous: bool = False
    client: ClientEnvironment = Field(default_factory=ClientEnvironment)


class IdentityOut(BaseModel):
    user_id: str
    display_name: str
    is_anonymous: bool
    is_fallback: bool = False
    created_at: datetime
    last_active_at: datetime
