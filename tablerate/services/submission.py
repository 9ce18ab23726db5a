"""Write path shared by the HTTP routes and the offline sync."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Union

from .retry import with_retry
from .validation import ValidationGate
from ..errors import FraudSuspicionError, TableRateError, ValidationError
from ..schemas.rating import Rating, RatingSubmission
from ..schemas.tracking import TrackingEntry
from ..schemas.validation import ValidationResult
from ..storage.base import RatingStore
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

# columns an overwrite never touches
IMMUTABLE_ON_UPDATE = ("restaurant_id", "user_id")


@dataclass
class SubmissionResult:
    rating_id: str
    is_update: bool


class RatingService:
    def __init__(
        self,
        store: RatingStore,
        gate: ValidationGate,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        now: Callable[[], datetime] = utcnow,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.gate = gate
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._now = now
        self._sleep = sleep

    async def _retry(self, operation):
        return await with_retry(
            operation, attempts=self.retry_attempts, delay=self.retry_delay, sleep=self._sleep
        )

    async def check(self, payload: Union[RatingSubmission, dict[str, Any]]) -> ValidationResult:
        """Run the gate without consuming rate-limit budget or writing anything."""
        return await self.gate.validate(payload, dry_run=True)

    async def submit(
        self, payload: Union[RatingSubmission, dict[str, Any]], *, replay: bool = False
    ) -> SubmissionResult:
        result = await self.gate.validate(payload, replay=replay)
        if not result.accepted:
            if result.detection_type:
                raise FraudSuspicionError(result.reasons, result.detection_type)
            raise ValidationError(result.reasons)

        submission = result.submission
        record = submission.to_record()
        if result.is_update:
            patch = {k: v for k, v in record.items() if k not in IMMUTABLE_ON_UPDATE}
            patch["updated_at"] = self._now().isoformat()
            await self._retry(lambda: self.store.update_rating(result.existing_rating_id, patch))
            rating_id = result.existing_rating_id
            logger.info("Updated rating %s for restaurant %s", rating_id, submission.restaurant_id)
        else:
            rating_id = await self._retry(lambda: self.store.create_rating(record))
            logger.info("Created rating %s for restaurant %s", rating_id, submission.restaurant_id)

        await self._track(submission)
        return SubmissionResult(rating_id=rating_id, is_update=result.is_update)

    async def _track(self, submission: RatingSubmission) -> None:
        try:
            entry = await self.store.get_tracking(submission.user_id, submission.restaurant_id)
            if entry is None:
                entry = TrackingEntry(user_id=submission.user_id, restaurant_id=submission.restaurant_id)
            await self.store.upsert_tracking(entry.record_review(self._now()))
        except TableRateError as exc:
            logger.warning("Could not update user tracking for %s: %s", submission.restaurant_id, exc)

    async def list_ratings(self, restaurant_id: str) -> list[Rating]:
        return await self.store.query_ratings(restaurant_id)
