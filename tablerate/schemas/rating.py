from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from .identity import ClientEnvironment
from ..utils.clock import ensure_aware

SUB_SCORE_FIELDS = ("quality", "taste", "price_rating", "ambiance", "service")
USER_NAME_PATTERN = r"^[a-zA-ZÀ-ÿ\s'-]+$"


class ModerationStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    REJECTED = "rejected"


class RatingScores(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    quality: Optional[float] = Field(None, ge=0, le=5)
    taste: Optional[float] = Field(None, ge=0, le=5)
    price_rating: Optional[float] = Field(None, ge=0, le=5)
    ambiance: Optional[float] = Field(None, ge=0, le=5)
    service: Optional[float] = Field(None, ge=0, le=5)

    def sub_scores(self) -> dict[str, float]:
        """Sub-scores the client actually supplied, in a fixed order."""
        supplied = {}
        for name in SUB_SCORE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                supplied[name] = value
        return supplied


class RatingSubmission(RatingScores):
    """A parsed, range-checked rating as it enters the validation gate."""

    restaurant_id: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=10, max_length=200)
    user_name: str = Field(..., min_length=1, max_length=50, pattern=USER_NAME_PATTERN)
    comment: Optional[str] = Field(None, max_length=500)
    photos: list[str] = []
    submitted_at: Optional[datetime] = None
    client_ref: Optional[str] = Field(None, max_length=64)
    client: ClientEnvironment = Field(default_factory=ClientEnvironment)

    @field_validator("user_name", "restaurant_id", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("comment", mode="before")
    @classmethod
    def _blank_comment(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("submitted_at")
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value) if value is not None else None

    def to_record(self) -> dict:
        """Columns written to the ratings table (client signals are never stored)."""
        return self.model_dump(mode="json", exclude={"client"})


class Rating(RatingScores):
    id: str
    restaurant_id: str
    user_id: str
    user_name: str = ""
    comment: Optional[str] = None
    photos: list[str] = []
    moderation_status: ModerationStatus = ModerationStatus.APPROVED
    is_reported: bool = False
    client_ref: Optional[str] = None
    submitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("created_at", "updated_at", "submitted_at")
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value) if value is not None else None

    @property
    def is_visible(self) -> bool:
        return self.moderation_status == ModerationStatus.APPROVED and not self.is_reported


class RatingOut(BaseModel):
    id: str
    restaurant_id: str
    user_name: str
    rating: int
    quality: Optional[float] = None
    taste: Optional[float] = None
    price_rating: Optional[float] = None
    ambiance: Optional[float] = None
    service: Optional[float] = None
    comment: Optional[str] = None
    photos: list[str] = []
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SubmissionOut(BaseModel):
    rating_id: str
    is_update: bool
