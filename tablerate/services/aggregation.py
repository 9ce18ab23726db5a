"""
Rating aggregation.

``summarize`` is a pure function from a rating set to an :class:`Aggregate`;
``AggregationEngine`` wraps it with the store query, a short-lived cache,
in-flight coalescing and the write-back onto the restaurant record.
"""

import asyncio
import logging
import statistics
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Optional, Sequence

from ..caching import TimedCache
from ..errors import TableRateError, TransientInfrastructureError
from ..schemas.aggregate import SCORE_BUCKETS, Aggregate, RatingStatistics, empty_distribution
from ..schemas.rating import Rating
from ..storage.base import RatingStore
from ..utils.clock import utcnow
from ..utils.logging import mask_identity

logger = logging.getLogger(__name__)

# (max sample count, confidence); anything above the last step gets 1.0
DEFAULT_CONFIDENCE_STEPS: tuple[tuple[int, float], ...] = (
    (0, 0.0),
    (1, 0.3),
    (2, 0.5),
    (3, 0.7),
    (5, 0.8),
    (10, 0.9),
)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class _Computation:
    forced: bool
    started: bool = False
    task: Optional[asyncio.Future] = field(default=None, repr=False)


def round_half_up(value: float, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def confidence_for(count: int, steps: Sequence[tuple[int, float]] = DEFAULT_CONFIDENCE_STEPS) -> float:
    for limit, confidence in steps:
        if count <= limit:
            return confidence
    return 1.0


def zero_aggregate(restaurant_id: str, computed_at: Optional[datetime] = None, **flags) -> Aggregate:
    return Aggregate(restaurant_id=restaurant_id, computed_at=computed_at, **flags)


def summarize(
    restaurant_id: str,
    ratings: Iterable[Rating],
    now: datetime,
    half_life_days: float = 30.0,
    confidence_steps: Sequence[tuple[int, float]] = DEFAULT_CONFIDENCE_STEPS,
) -> Aggregate:
    ratings = list(ratings)
    if not ratings:
        return zero_aggregate(restaurant_id, computed_at=now)

    scores = [r.rating for r in ratings]
    distribution = empty_distribution()
    for score in scores:
        distribution[score] += 1

    total_weight = 0.0
    weighted_sum = 0.0
    for rating in ratings:
        age_days = max(0.0, (now - rating.created_at).total_seconds() / SECONDS_PER_DAY)
        weight = 0.5 ** (age_days / half_life_days)
        total_weight += weight
        weighted_sum += rating.rating * weight

    top = max(distribution.values())
    mode = min(bucket for bucket in SCORE_BUCKETS if distribution[bucket] == top)

    return Aggregate(
        restaurant_id=restaurant_id,
        average_score=round_half_up(statistics.fmean(scores), 1),
        weighted_average=round_half_up(weighted_sum / total_weight, 1) if total_weight else 0.0,
        total_ratings=len(scores),
        distribution=distribution,
        confidence_score=confidence_for(len(scores), confidence_steps),
        standard_deviation=round_half_up(statistics.pstdev(scores), 2),
        median=round_half_up(statistics.median(scores), 1),
        mode=mode,
        computed_at=now,
    )


def rating_trend(ratings: Sequence[Rating]) -> str:
    if len(ratings) < 2:
        return "insufficient_data"
    ordered = sorted(ratings, key=lambda r: r.created_at)
    middle = len(ordered) // 2
    first = statistics.fmean(r.rating for r in ordered[:middle])
    second = statistics.fmean(r.rating for r in ordered[middle:])
    difference = second - first
    if difference > 0.5:
        return "improving"
    if difference < -0.5:
        return "declining"
    return "stable"


def rating_consistency(ratings: Sequence[Rating]) -> float:
    if not ratings:
        return 0.0
    deviation = statistics.pstdev(r.rating for r in ratings)
    # 2 is the widest spread treated as meaningful on a 1-5 scale
    return round_half_up(max(0.0, 1 - deviation / 2), 2)


class AggregationEngine:
    def __init__(
        self,
        store: RatingStore,
        cache_ttl: float = 30.0,
        half_life_days: float = 30.0,
        confidence_steps: Sequence[tuple[int, float]] = DEFAULT_CONFIDENCE_STEPS,
        history_size: int = 1000,
        batch_pause: float = 0.1,
        now: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.half_life_days = half_life_days
        self.confidence_steps = tuple(confidence_steps)
        self.batch_pause = batch_pause
        self._now = now
        self._cache = TimedCache(ttl=cache_ttl, clock=monotonic)
        self._inflight: dict[str, asyncio.Task] = {}
        self._history: deque = deque(maxlen=history_size)
        self.computations = 0

    async def compute_aggregate(self, restaurant_id: str, force_refresh: bool = False) -> Aggregate:
        if not force_refresh:
            cached = self._cache.get(restaurant_id)
            if cached is not None:
                return cached

        current = self._inflight.get(restaurant_id)
        # A forced read must see every write made before it was requested, so it
        # only joins a forced computation that has not taken its snapshot yet.
        if current is not None and (not force_refresh or (current.forced and not current.started)):
            return await asyncio.shield(current.task)

        computation = _Computation(forced=force_refresh)
        previous = current.task if current is not None else None
        computation.task = asyncio.ensure_future(self._compute(restaurant_id, computation, previous))
        self._inflight[restaurant_id] = computation
        computation.task.add_done_callback(
            lambda done, key=restaurant_id, entry=computation: self._forget_inflight(key, entry)
        )
        return await asyncio.shield(computation.task)

    def _forget_inflight(self, restaurant_id: str, computation: _Computation) -> None:
        if self._inflight.get(restaurant_id) is computation:
            del self._inflight[restaurant_id]

    async def _fetch(self, restaurant_id: str) -> list[Rating]:
        try:
            return await self.store.query_ratings(restaurant_id)
        except TransientInfrastructureError:
            raise
        except Exception as exc:
            raise TransientInfrastructureError(f"Could not load ratings for {restaurant_id}: {exc}") from exc

    async def _compute(
        self,
        restaurant_id: str,
        computation: _Computation,
        previous: Optional[asyncio.Future] = None,
    ) -> Aggregate:
        if previous is not None:
            # one query per restaurant at a time; the outcome belongs to its own callers
            await asyncio.wait([previous])
        computation.started = True
        ratings = await self._fetch(restaurant_id)
        aggregate = summarize(
            restaurant_id,
            ratings,
            self._now(),
            half_life_days=self.half_life_days,
            confidence_steps=self.confidence_steps,
        )
        self.computations += 1

        try:
            await self.store.update_restaurant_summary(restaurant_id, aggregate.summary_patch())
        except Exception as exc:
            logger.error("Failed to write rating summary for %s: %s", restaurant_id, exc)

        self._cache.set(restaurant_id, aggregate)
        self._history.append(
            {
                "restaurant_id": restaurant_id,
                "aggregate": aggregate.to_dict(),
                "ratings_count": len(ratings),
                "timestamp": aggregate.computed_at.isoformat(),
            }
        )
        logger.debug(
            "Computed aggregate for %s: avg=%s n=%s", restaurant_id, aggregate.average_score, len(ratings)
        )
        return aggregate

    async def get_statistics(self, restaurant_id: str) -> RatingStatistics:
        aggregate = await self.compute_aggregate(restaurant_id)
        ratings = await self._fetch(restaurant_id)
        newest = sorted(ratings, key=lambda r: r.created_at, reverse=True)[:10]
        recent = [
            {
                "rating": r.rating,
                "created_at": r.created_at.isoformat(),
                "user_id": mask_identity(r.user_id),
            }
            for r in newest
        ]
        return RatingStatistics(
            aggregate=aggregate,
            recent_ratings=recent,
            trend=rating_trend(ratings),
            consistency=rating_consistency(ratings),
        )

    async def batch_recalculate(self, restaurant_ids: Sequence[str]) -> list[dict[str, Any]]:
        logger.info("Batch recalculating %s restaurants", len(restaurant_ids))
        results = []
        for index, restaurant_id in enumerate(restaurant_ids):
            try:
                aggregate = await self.compute_aggregate(restaurant_id, force_refresh=True)
                results.append({"restaurant_id": restaurant_id, "success": True, "aggregate": aggregate})
            except TableRateError as exc:
                logger.error("Failed to recalculate %s: %s", restaurant_id, exc)
                results.append({"restaurant_id": restaurant_id, "success": False, "error": str(exc)})
            if self.batch_pause and index < len(restaurant_ids) - 1:
                await asyncio.sleep(self.batch_pause)

        succeeded = sum(1 for r in results if r["success"])
        logger.info("Batch recalculation completed: %s/%s successful", succeeded, len(results))
        return results

    async def recalculate_all(self) -> list[dict[str, Any]]:
        try:
            restaurant_ids = await self.store.list_restaurant_ids()
        except TransientInfrastructureError:
            raise
        except Exception as exc:
            raise TransientInfrastructureError(f"Could not list restaurants: {exc}") from exc
        return await self.batch_recalculate(restaurant_ids)

    def invalidate(self, restaurant_id: str) -> None:
        self._cache.pop(restaurant_id)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Aggregate cache cleared")

    def cache_status(self) -> dict[str, Any]:
        return {
            "size": len(self._cache),
            "ttl": self._cache.ttl,
            "in_flight": sorted(self._inflight),
            "entries": self._cache.entries(),
        }

    def history(self, restaurant_id: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        entries = [e for e in self._history if restaurant_id is None or e["restaurant_id"] == restaurant_id]
        return entries[-limit:] if limit else []
