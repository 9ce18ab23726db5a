from typing import Any, Optional
from pydantic import BaseModel


class ConnectivityUpdate(BaseModel):
    online: Optional[bool] = None
    force_offline: Optional[bool] = None


class QueuedRatingOut(BaseModel):
    client_ref: str
    queue_id: int
    queued: bool = True


class SyncReportOut(BaseModel):
    synced: int
    rejected: int
    failed: int
    remaining: int
    errors: list[str] = []

    class Config:
        from_attributes = True


class SyncOperationOut(BaseModel):
    id: int
    op_type: str
    action: str
    payload: dict[str, Any]
    enqueued_at: float
    attempts: int
    last_error: Optional[str] = None
    status: str
