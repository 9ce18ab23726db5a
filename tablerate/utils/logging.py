import logging
from collections import deque
from typing import Any, Optional

from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def mask_identity(user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return user_id
    return user_id[:10] + "..."


def sanitize_submission(data: Optional[dict]) -> Optional[dict]:
    """Copy of a submission safe to keep in logs: short comment, masked user."""
    if data is None:
        return None
    sanitized = dict(data)
    sanitized.pop("client", None)
    comment = sanitized.get("comment")
    if isinstance(comment, str) and len(comment) > 100:
        sanitized["comment"] = comment[:100] + "..."
    if sanitized.get("user_id"):
        sanitized["user_id"] = mask_identity(str(sanitized["user_id"]))
    return sanitized


class SecurityEventLog:
    """
    Records rejected and suspicious rating attempts.

    Events are logged at WARNING, kept in a bounded in-memory ring and written
    to the store's ``security_events`` table. A failed write is reported on
    the server log and never reaches the caller.
    """

    def __init__(self, store=None, capacity: int = 100, clock=utcnow):
        self._store = store
        self._clock = clock
        self._events: deque = deque(maxlen=capacity)

    async def record(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        restaurant_id: Optional[str] = None,
        reasons: Optional[list[str]] = None,
        details: Optional[Any] = None,
    ) -> dict:
        event = {
            "created_at": self._clock().isoformat(),
            "event_type": event_type,
            "user_id": mask_identity(user_id),
            "restaurant_id": restaurant_id,
            "reasons": list(reasons or []),
            "details": details,
        }
        self._events.append(event)
        logger.warning("Security event %s for restaurant %s: %s", event_type, restaurant_id, event["reasons"])

        if self._store is not None:
            try:
                await self._store.record_security_event(event)
            except Exception as e:
                # Log to server console if the store write fails
                logger.error("FAILED TO WRITE SECURITY EVENT: %s", e)
        return event

    def note_accepted(self, user_id: Optional[str], restaurant_id: Optional[str]) -> None:
        """Count an accepted attempt in the ring; not persisted."""
        self._events.append(
            {
                "created_at": self._clock().isoformat(),
                "event_type": "validation_passed",
                "user_id": mask_identity(user_id),
                "restaurant_id": restaurant_id,
                "reasons": [],
                "details": None,
            }
        )
        logger.debug("Validation passed for restaurant %s", restaurant_id)

    def recent(self, limit: int = 50) -> list[dict]:
        events = list(self._events)
        return events[-limit:] if limit else []

    def stats(self) -> dict[str, Any]:
        events = list(self._events)
        by_type: dict[str, int] = {}
        for event in events:
            by_type[event["event_type"]] = by_type.get(event["event_type"], 0) + 1
        accepted = by_type.get("validation_passed", 0)
        return {
            "total_events": len(events),
            "rejected": len(events) - accepted,
            "accepted": accepted,
            "by_type": by_type,
            "last_event_at": events[-1]["created_at"] if events else None,
        }
