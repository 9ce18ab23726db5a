from typing import Optional
from pydantic import BaseModel, Field


class RecalculateRequest(BaseModel):
    # None means every known restaurant
    restaurant_ids: Optional[list[str]] = Field(None, max_length=500)


class RecalculationOut(BaseModel):
    restaurant_id: str
    success: bool
    average_score: Optional[float] = None
    total_ratings: Optional[int] = None
    error: Optional[str] = None
