"""Supabase-backed rating store.

Tables: ``ratings``, ``restaurants``, ``user_tracking``, ``security_events``.
The change stream uses Supabase Realtime postgres changes on ``ratings``;
the table needs ``REPLICA IDENTITY FULL`` so deletes carry the old row.
"""

import asyncio
import inspect
import logging
from typing import Any, Optional
from uuid import uuid4

import httpx
from pydantic import ValidationError as PydanticValidationError
from supabase import AsyncClient

from .base import ChangeType, RatingChange, RatingStore, Subscription
from ..errors import TransientInfrastructureError
from ..schemas.rating import ModerationStatus, Rating
from ..schemas.tracking import TrackingEntry

logger = logging.getLogger(__name__)


class SupabaseRatingStore(RatingStore):
    def __init__(self, client: AsyncClient, timeout: float = 10.0):
        self._client = client
        self._timeout = timeout
        self._pending: set[asyncio.Future] = set()

    async def _execute(self, query):
        try:
            return await asyncio.wait_for(query.execute(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransientInfrastructureError("Timed out talking to Supabase") from exc
        except httpx.TransportError as exc:
            raise TransientInfrastructureError(f"Supabase unreachable: {exc}") from exc

    async def query_ratings(self, restaurant_id, *, user_id=None, visible_only=True):
        query = self._client.table("ratings").select("*").eq("restaurant_id", restaurant_id)
        if user_id:
            query = query.eq("user_id", user_id)
        if visible_only:
            query = query.eq("moderation_status", ModerationStatus.APPROVED.value).eq("is_reported", False)
        response = await self._execute(query.order("created_at", desc=True))
        return [Rating.model_validate(row) for row in response.data or []]

    async def create_rating(self, data):
        response = await self._execute(self._client.table("ratings").insert(data))
        if not response.data:
            raise TransientInfrastructureError("Failed to create rating")
        return str(response.data[0]["id"])

    async def update_rating(self, rating_id, patch):
        response = await self._execute(self._client.table("ratings").update(patch).eq("id", rating_id))
        if not response.data:
            raise KeyError(f"Rating {rating_id} not found")
        return Rating.model_validate(response.data[0])

    async def update_restaurant_summary(self, restaurant_id, patch):
        await self._execute(self._client.table("restaurants").update(patch).eq("id", restaurant_id))

    async def get_tracking(self, user_id, restaurant_id):
        response = await self._execute(
            self._client.table("user_tracking")
            .select("*")
            .eq("user_id", user_id)
            .eq("restaurant_id", restaurant_id)
            .limit(1)
        )
        if response.data:
            return TrackingEntry.model_validate(response.data[0])
        return None

    async def upsert_tracking(self, entry):
        await self._execute(
            self._client.table("user_tracking").upsert(
                entry.model_dump(mode="json"), on_conflict="user_id,restaurant_id"
            )
        )

    async def record_security_event(self, event):
        await self._execute(self._client.table("security_events").insert(event))

    async def list_security_events(self, limit=100, event_type=None):
        query = self._client.table("security_events").select("*").order("created_at", desc=True).limit(limit)
        if event_type:
            query = query.eq("event_type", event_type)
        response = await self._execute(query)
        return response.data or []

    async def list_restaurant_ids(self):
        response = await self._execute(self._client.table("restaurants").select("id"))
        return [str(row["id"]) for row in response.data or []]

    async def ping(self):
        await self._execute(self._client.table("restaurants").select("id").limit(1))

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def subscribe_to_changes(self, predicate, callback):
        channel = self._client.channel(f"ratings-changes-{uuid4().hex[:8]}")

        def handle(payload: dict[str, Any]) -> None:
            change = parse_change(payload)
            if change is None or not predicate(change):
                return
            try:
                result = callback([change])
            except Exception:
                logger.exception("Rating change callback failed")
                return
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending.add(future)
                future.add_done_callback(self._pending.discard)

        channel.on_postgres_changes("*", schema="public", table="ratings", callback=handle)
        await channel.subscribe()
        logger.info("Subscribed to rating changes on channel %s", channel.topic)

        async def close() -> None:
            await self._client.remove_channel(channel)
            logger.info("Closed rating change channel %s", channel.topic)

        return Subscription(close)


def parse_change(payload: dict[str, Any]) -> Optional[RatingChange]:
    """Turn a realtime postgres-changes payload into a :class:`RatingChange`."""
    data = payload.get("data", payload)
    raw_type = str(data.get("type") or data.get("eventType") or "").upper()
    try:
        change_type = ChangeType(raw_type)
    except ValueError:
        logger.warning("Ignoring realtime payload with unknown type %r", raw_type)
        return None

    def to_rating(row: Optional[dict[str, Any]]) -> Optional[Rating]:
        if not row or "restaurant_id" not in row:
            return None
        try:
            return Rating.model_validate(row)
        except PydanticValidationError as exc:
            logger.warning("Unparseable rating row in realtime payload: %s", exc)
            return None

    new = to_rating(data.get("record") or data.get("new"))
    old = to_rating(data.get("old_record") or data.get("old"))
    if new is None and old is None:
        return None
    return RatingChange(type=change_type, new=new, old=old)
