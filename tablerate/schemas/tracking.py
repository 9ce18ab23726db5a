from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class TrackingEntry(BaseModel):
    """Duplicate-guard record: one per (user, restaurant) pair."""

    user_id: str
    restaurant_id: str
    has_reviewed: bool = False
    review_count: int = 0
    last_interaction_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def record_review(self, at: datetime) -> "TrackingEntry":
        return self.model_copy(
            update={
                "has_reviewed": True,
                "review_count": self.review_count + 1,
                "last_interaction_at": at,
            }
        )
