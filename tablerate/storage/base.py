"""Contract between the rating pipeline and the persistence collaborator.

The pipeline only needs a handful of queries and a change stream. Anything
that implements :class:`RatingStore` can back it: Supabase in production, an
in-process store in tests.
"""

import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union
from pydantic import BaseModel

from ..schemas.rating import Rating
from ..schemas.tracking import TrackingEntry


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RatingChange(BaseModel):
    type: ChangeType
    new: Optional[Rating] = None
    old: Optional[Rating] = None

    @property
    def restaurant_id(self) -> Optional[str]:
        record = self.new or self.old
        return record.restaurant_id if record else None

    def touches_visible(self) -> bool:
        """True when the change can move a restaurant's visible rating set."""
        return any(record is not None and record.is_visible for record in (self.old, self.new))


ChangePredicate = Callable[[RatingChange], bool]
ChangeCallback = Callable[[list[RatingChange]], Union[Awaitable[None], None]]


class Subscription:
    """Handle for a change-stream subscription. ``close()`` is idempotent."""

    def __init__(self, closer: Callable[[], Union[Awaitable[None], None]]):
        self._closer = closer
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        result = self._closer()
        if inspect.isawaitable(result):
            await result


class RatingStore(ABC):
    @abstractmethod
    async def query_ratings(
        self,
        restaurant_id: str,
        *,
        user_id: Optional[str] = None,
        visible_only: bool = True,
    ) -> list[Rating]:
        """Ratings for a restaurant, newest first."""

    @abstractmethod
    async def create_rating(self, data: dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def update_rating(self, rating_id: str, patch: dict[str, Any]) -> Rating:
        ...

    @abstractmethod
    async def update_restaurant_summary(self, restaurant_id: str, patch: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def subscribe_to_changes(
        self, predicate: ChangePredicate, callback: ChangeCallback
    ) -> Subscription:
        ...

    @abstractmethod
    async def get_tracking(self, user_id: str, restaurant_id: str) -> Optional[TrackingEntry]:
        ...

    @abstractmethod
    async def upsert_tracking(self, entry: TrackingEntry) -> None:
        ...

    @abstractmethod
    async def record_security_event(self, event: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def list_security_events(
        self, limit: int = 100, event_type: Optional[str] = None
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def list_restaurant_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise when the backend cannot be reached."""
