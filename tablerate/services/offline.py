"""
Offline continuity.

Reads fall back to the local aggregate cache, then to an aggregate
computed from locally queued ratings, then to the zero aggregate; every
fallback is flagged ``is_from_offline_cache``. Writes made while offline
are appended to the local log and drained in order on reconnect.
"""

import asyncio
import logging
import sqlite3
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union
from uuid import uuid4

from .aggregation import AggregationEngine, summarize, zero_aggregate
from .connectivity import ConnectivityPolicy
from .submission import RatingService
from ..errors import TransientInfrastructureError, ValidationError
from ..schemas.aggregate import Aggregate
from ..schemas.rating import Rating, RatingSubmission
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    synced: int = 0
    rejected: int = 0
    failed: int = 0
    remaining: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class QueuedRating:
    client_ref: str
    queue_id: int


class OfflineContinuity:
    def __init__(
        self,
        local,
        engine: AggregationEngine,
        service: RatingService,
        policy: ConnectivityPolicy,
        cache_ttl: float = 24 * 60 * 60,
        now: Callable[[], datetime] = utcnow,
    ):
        self.local = local
        self.engine = engine
        self.service = service
        self.policy = policy
        self.cache_ttl = cache_ttl
        self._now = now
        self._sync_task: Optional[asyncio.Task] = None
        self.last_sync: Optional[SyncReport] = None
        policy.monitor.on_change(self._connection_changed)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_aggregate(self, restaurant_id: str, force_refresh: bool = False) -> Aggregate:
        if self.policy.online:
            try:
                aggregate = await self.engine.compute_aggregate(restaurant_id, force_refresh=force_refresh)
            except TransientInfrastructureError as exc:
                logger.warning("Live aggregate unavailable for %s, using offline data: %s", restaurant_id, exc)
            else:
                await self.mirror(restaurant_id, aggregate)
                return aggregate
        return await self._offline_aggregate(restaurant_id)

    async def _offline_aggregate(self, restaurant_id: str) -> Aggregate:
        now = self._now()
        cached = await asyncio.to_thread(self.local.get_aggregate, restaurant_id)
        if cached is not None and cached["expires_at"] > now.timestamp():
            return replace(Aggregate.from_dict(cached["payload"]), is_from_offline_cache=True)

        queued = await asyncio.to_thread(self.local.offline_ratings, restaurant_id)
        ratings = [rating for rating in map(_queued_rating, queued) if rating is not None]
        if ratings:
            aggregate = summarize(restaurant_id, ratings, now, half_life_days=self.engine.half_life_days)
            return replace(aggregate, is_from_offline_cache=True)

        return zero_aggregate(restaurant_id, computed_at=now, is_from_offline_cache=True)

    async def mirror(self, restaurant_id: str, aggregate: Aggregate) -> None:
        """Keep the local cache in step with the latest live aggregate."""
        now = self._now()
        expires = now + timedelta(seconds=self.cache_ttl)
        try:
            await asyncio.to_thread(
                self.local.put_aggregate,
                restaurant_id,
                aggregate.to_dict(),
                now.timestamp(),
                expires.timestamp(),
            )
        except sqlite3.Error as exc:
            logger.error("Failed to mirror aggregate for %s: %s", restaurant_id, exc)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def submit_offline(self, payload: Union[RatingSubmission, dict[str, Any]]) -> QueuedRating:
        """Queue a rating locally. Nothing is sent over the network."""
        submission, reasons = self.service.gate.check_schema(payload)
        if reasons:
            raise ValidationError(reasons)

        updates = {"client_ref": submission.client_ref or uuid4().hex}
        if submission.submitted_at is None:
            updates["submitted_at"] = self._now()
        submission = submission.model_copy(update=updates)

        queue_id = await asyncio.to_thread(
            self.local.record_offline_rating,
            submission.client_ref,
            submission.restaurant_id,
            submission.model_dump(mode="json"),
            self._now().timestamp(),
        )
        logger.info("Queued offline rating %s for restaurant %s", submission.client_ref, submission.restaurant_id)
        return QueuedRating(client_ref=submission.client_ref, queue_id=queue_id)

    async def synchronize(self) -> SyncReport:
        """Drain the sync queue; concurrent callers share one drain."""
        if self._sync_task is None:
            self._sync_task = asyncio.ensure_future(self._drain())
            self._sync_task.add_done_callback(self._sync_finished)
        return await asyncio.shield(self._sync_task)

    def _sync_finished(self, task: asyncio.Task) -> None:
        if self._sync_task is task:
            self._sync_task = None

    async def _drain(self) -> SyncReport:
        report = SyncReport()
        if not self.policy.online:
            report.remaining = (await asyncio.to_thread(self.local.counts))["pending_sync"]
            return report

        operations = await asyncio.to_thread(self.local.pending_operations)
        if operations:
            logger.info("Synchronizing %s queued operations", len(operations))

        for operation in operations:
            payload = operation["payload"]
            client_ref = payload.get("client_ref")
            if (operation["op_type"], operation["action"]) != ("rating", "create"):
                await asyncio.to_thread(
                    self.local.mark_rejected, operation["id"], "Unsupported operation", client_ref
                )
                report.rejected += 1
                continue

            try:
                await self.service.submit(payload, replay=True)
            except ValidationError as exc:
                error = "; ".join(exc.reasons)
                logger.warning("Queued rating %s rejected: %s", client_ref, error)
                await asyncio.to_thread(self.local.mark_rejected, operation["id"], error, client_ref)
                report.rejected += 1
                continue
            except TransientInfrastructureError as exc:
                logger.warning("Sync stopped at operation %s: %s", operation["id"], exc)
                await asyncio.to_thread(self.local.record_failure, operation["id"], str(exc))
                report.failed += 1
                report.errors.append(str(exc))
                break

            await asyncio.to_thread(self.local.resolve_operation, operation["id"], client_ref)
            report.synced += 1

        report.remaining = (await asyncio.to_thread(self.local.counts))["pending_sync"]
        self.last_sync = report
        logger.info(
            "Sync finished: %s synced, %s rejected, %s remaining", report.synced, report.rejected, report.remaining
        )
        return report

    async def _connection_changed(self, online: bool) -> None:
        if online:
            await self.synchronize()

    async def set_force_offline(self, force_offline: bool) -> None:
        """Lifting a forced offline mode is a reconnect and drains the queue."""
        was_forced = self.policy.force_offline
        self.policy.force_offline = force_offline
        if was_forced and not force_offline and self.policy.online:
            await self.synchronize()

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def purge_expired(self) -> int:
        removed = await asyncio.to_thread(self.local.purge_expired_aggregates, self._now().timestamp())
        if removed:
            logger.info("Purged %s expired cached aggregates", removed)
        return removed

    async def rejected_operations(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.local.rejected_operations)

    async def status(self) -> dict[str, Any]:
        counts = await asyncio.to_thread(self.local.counts)
        return {
            "mode": self.policy.select().value,
            "online": self.policy.monitor.is_online,
            "force_offline": self.policy.force_offline,
            "syncing": self._sync_task is not None,
            "last_sync": asdict(self.last_sync) if self.last_sync else None,
            **counts,
        }

    async def clear_offline_data(self) -> None:
        await asyncio.to_thread(self.local.clear)
        logger.info("Offline data cleared")


def _queued_rating(payload: dict[str, Any]) -> Optional[Rating]:
    try:
        return Rating.model_validate(
            {
                **payload,
                "id": f"offline-{payload.get('client_ref')}",
                "created_at": payload.get("submitted_at") or utcnow(),
            }
        )
    except ValueError as exc:
        logger.warning("Skipping unreadable queued rating: %s", exc)
        return None
