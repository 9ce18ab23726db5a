"""In-process rating store.

Used by the test-suite and for running the API without a Supabase project.
Writes publish change batches to subscribers the same way the realtime
stream does, and the store can be switched "down" to exercise the
transient-failure paths.
"""

import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import uuid4

from .base import (
    ChangeCallback,
    ChangePredicate,
    ChangeType,
    RatingChange,
    RatingStore,
    Subscription,
)
from ..errors import TransientInfrastructureError
from ..schemas.rating import ModerationStatus, Rating
from ..schemas.tracking import TrackingEntry
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class MemoryRatingStore(RatingStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self.ratings: dict[str, Rating] = {}
        self.summaries: dict[str, dict[str, Any]] = {}
        self.restaurants: set[str] = set()
        self.tracking: dict[tuple[str, str], TrackingEntry] = {}
        self.security_events: list[dict[str, Any]] = []
        self.available = True
        self.failing_writes = 0
        self.query_count = 0
        self._subscribers: dict[int, tuple[ChangePredicate, ChangeCallback]] = {}
        self._next_subscriber = 0

    # ------------------------------------------------------------------
    # Failure simulation
    # ------------------------------------------------------------------

    def _check_available(self) -> None:
        if not self.available:
            raise TransientInfrastructureError("Rating store is unavailable")

    def _check_write(self) -> None:
        self._check_available()
        if self.failing_writes > 0:
            self.failing_writes -= 1
            raise TransientInfrastructureError("Simulated write failure")

    # ------------------------------------------------------------------
    # RatingStore
    # ------------------------------------------------------------------

    async def query_ratings(self, restaurant_id, *, user_id=None, visible_only=True):
        self._check_available()
        self.query_count += 1
        found = [
            rating
            for rating in self.ratings.values()
            if rating.restaurant_id == restaurant_id
            and (user_id is None or rating.user_id == user_id)
            and (not visible_only or rating.is_visible)
        ]
        return sorted(found, key=lambda r: r.created_at, reverse=True)

    async def create_rating(self, data):
        self._check_write()
        now = self._clock()
        record = {
            "moderation_status": ModerationStatus.APPROVED.value,
            "is_reported": False,
            "created_at": now,
            "updated_at": now,
            **data,
            "id": data.get("id") or str(uuid4()),
        }
        rating = Rating.model_validate(record)
        self.ratings[rating.id] = rating
        self.restaurants.add(rating.restaurant_id)
        await self.emit([RatingChange(type=ChangeType.INSERT, new=rating)])
        return rating.id

    async def update_rating(self, rating_id, patch):
        self._check_write()
        old = self.ratings.get(rating_id)
        if old is None:
            raise KeyError(f"Rating {rating_id} not found")
        merged = {**old.model_dump(), "updated_at": self._clock(), **patch, "id": rating_id}
        rating = Rating.model_validate(merged)
        self.ratings[rating_id] = rating
        await self.emit([RatingChange(type=ChangeType.UPDATE, new=rating, old=old)])
        return rating

    async def update_restaurant_summary(self, restaurant_id, patch):
        self._check_write()
        self.restaurants.add(restaurant_id)
        self.summaries.setdefault(restaurant_id, {}).update(patch)

    async def subscribe_to_changes(self, predicate, callback):
        subscriber_id = self._next_subscriber
        self._next_subscriber += 1
        self._subscribers[subscriber_id] = (predicate, callback)
        return Subscription(lambda: self._subscribers.pop(subscriber_id, None))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def get_tracking(self, user_id, restaurant_id):
        self._check_available()
        return self.tracking.get((user_id, restaurant_id))

    async def upsert_tracking(self, entry):
        self._check_write()
        self.tracking[(entry.user_id, entry.restaurant_id)] = entry

    async def record_security_event(self, event):
        self._check_write()
        self.security_events.append({"id": str(uuid4()), **event})

    async def list_security_events(self, limit=100, event_type=None):
        self._check_available()
        events = [e for e in self.security_events if event_type is None or e.get("event_type") == event_type]
        return list(reversed(events))[:limit]

    async def list_restaurant_ids(self):
        self._check_available()
        return sorted(self.restaurants)

    async def ping(self):
        self._check_available()

    # ------------------------------------------------------------------
    # Change stream
    # ------------------------------------------------------------------

    async def emit(self, changes: list[RatingChange]) -> None:
        """Deliver a change batch to every subscriber whose predicate matches."""
        for predicate, callback in list(self._subscribers.values()):
            relevant = [change for change in changes if predicate(change)]
            if not relevant:
                continue
            try:
                result = callback(relevant)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change subscriber failed")
