from datetime import datetime
from typing import Optional, Any
from pydantic import BaseModel


class SecurityEventOut(BaseModel):
    id: Optional[str] = None
    created_at: datetime
    event_type: str
    user_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    reasons: list[str] = []
    details: Optional[Any] = None

    class Config:
        from_attributes = True


class ValidationStatsOut(BaseModel):
    total_events: int
    rejected: int
    accepted: int
    by_type: dict[str, int]
    last_event_at: Optional[datetime] = None
