from typing import Optional
from pydantic import BaseModel, Field

from .rating import RatingSubmission


class ValidationResult(BaseModel):
    accepted: bool
    reasons: list[str] = []
    is_update: bool = False
    existing_rating_id: Optional[str] = None
    stage: Optional[str] = None
    detection_type: Optional[str] = None
    submission: Optional[RatingSubmission] = Field(default=None, exclude=True)

    @property
    def is_fraud(self) -> bool:
        return self.detection_type is not None
