"""
Change propagation: rating writes -> debounced recomputation -> observers.

Each restaurant moves through IDLE -> PENDING -> RECOMPUTING -> IDLE. A
change while PENDING re-arms the debounce timer; a change while
RECOMPUTING queues exactly one follow-up run.
"""

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from itertools import count
from typing import Any, Awaitable, Callable, Optional, Union

from .aggregation import AggregationEngine
from ..errors import TableRateError, TransientInfrastructureError
from ..schemas.aggregate import Aggregate
from ..storage.base import RatingChange, RatingStore, Subscription

logger = logging.getLogger(__name__)

MIN_DEBOUNCE_SECONDS = 0.1

AggregateObserver = Callable[[str, Aggregate], Union[Awaitable[None], None]]


class Phase(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RECOMPUTING = "recomputing"


@dataclass
class _KeyState:
    phase: Phase = Phase.IDLE
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    rerun: bool = False


@dataclass
class _Observer:
    restaurant_id: Optional[str]
    callback: AggregateObserver


class ObserverHandle:
    def __init__(self, propagator: "ChangePropagator", observer_id: int):
        self._propagator = propagator
        self._id = observer_id

    def unsubscribe(self) -> None:
        self._propagator._observers.pop(self._id, None)


class ChangePropagator:
    def __init__(
        self,
        store: RatingStore,
        engine: AggregationEngine,
        debounce_delay: float = 1.0,
        sweep_interval: float = 0.0,
    ):
        self.store = store
        self.engine = engine
        self.debounce_delay = max(MIN_DEBOUNCE_SECONDS, debounce_delay)
        self.sweep_interval = sweep_interval
        self._states: dict[str, _KeyState] = {}
        self._observers: dict[int, _Observer] = {}
        self._ids = count()
        self._subscription: Optional[Subscription] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self.recomputations = 0
        self.failures = 0
        self.notifications = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self.store.subscribe_to_changes(
            RatingChange.touches_visible, self.handle_changes
        )
        if self.sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Change propagator started (debounce=%ss)", self.debounce_delay)

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        self.cancel_all_pending()
        running = [state.task for state in self._states.values() if state.task is not None]
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        self._observers.clear()
        self._states.clear()
        logger.info("Change propagator stopped")

    @property
    def running(self) -> bool:
        return self._subscription is not None

    # ------------------------------------------------------------------
    # Change stream
    # ------------------------------------------------------------------

    def handle_changes(self, changes: list[RatingChange]) -> None:
        affected = dict.fromkeys(c.restaurant_id for c in changes if c.restaurant_id)
        for restaurant_id in affected:
            self.trigger(restaurant_id)

    def trigger(self, restaurant_id: str) -> None:
        state = self._states.setdefault(restaurant_id, _KeyState())
        if state.phase is Phase.RECOMPUTING:
            state.rerun = True
            return
        if state.timer is not None:
            state.timer.cancel()
        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(self.debounce_delay, self._fire, restaurant_id)
        state.phase = Phase.PENDING

    def _fire(self, restaurant_id: str) -> None:
        state = self._states.get(restaurant_id)
        if state is None or state.phase is not Phase.PENDING:
            return
        state.timer = None
        self._start_recompute(restaurant_id, state)

    def _start_recompute(self, restaurant_id: str, state: _KeyState) -> asyncio.Task:
        state.phase = Phase.RECOMPUTING
        state.task = asyncio.ensure_future(self._recompute(restaurant_id, state))
        return state.task

    async def _recompute(self, restaurant_id: str, state: _KeyState) -> Optional[Aggregate]:
        aggregate = None
        try:
            while True:
                state.rerun = False
                try:
                    aggregate = await self.engine.compute_aggregate(restaurant_id, force_refresh=True)
                except TableRateError as exc:
                    aggregate = None
                    self.failures += 1
                    logger.error("Recomputation failed for %s: %s", restaurant_id, exc)
                else:
                    self.recomputations += 1
                    await self._notify(restaurant_id, aggregate)
                if not state.rerun:
                    break
        finally:
            state.task = None
            state.phase = Phase.IDLE
            if self._states.get(restaurant_id) is state:
                del self._states[restaurant_id]
        return aggregate

    async def _notify(self, restaurant_id: str, aggregate: Aggregate) -> None:
        observers = [
            observer
            for observer in list(self._observers.values())
            if observer.restaurant_id is None or observer.restaurant_id == restaurant_id
        ]
        for observer in observers:
            try:
                result = observer.callback(restaurant_id, aggregate)
                if inspect.isawaitable(result):
                    await result
                self.notifications += 1
            except Exception:
                logger.exception("Aggregate observer failed for restaurant %s", restaurant_id)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, restaurant_id: str, callback: AggregateObserver) -> ObserverHandle:
        observer_id = next(self._ids)
        self._observers[observer_id] = _Observer(restaurant_id, callback)
        logger.debug("Added observer %s for restaurant %s", observer_id, restaurant_id)
        return ObserverHandle(self, observer_id)

    def subscribe_all(self, callback: AggregateObserver) -> ObserverHandle:
        observer_id = next(self._ids)
        self._observers[observer_id] = _Observer(None, callback)
        logger.debug("Added global observer %s", observer_id)
        return ObserverHandle(self, observer_id)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def force_update(self, restaurant_id: str) -> Aggregate:
        """Recompute now, bypassing the debounce timer."""
        self.cancel_pending(restaurant_id)
        state = self._states.get(restaurant_id)
        if state is not None and state.phase is Phase.RECOMPUTING:
            state.rerun = True
            task = state.task
        else:
            state = self._states.setdefault(restaurant_id, _KeyState())
            task = self._start_recompute(restaurant_id, state)
        aggregate = await asyncio.shield(task)
        if aggregate is None:
            raise TransientInfrastructureError(f"Could not recompute aggregate for {restaurant_id}")
        return aggregate

    def cancel_pending(self, restaurant_id: str) -> None:
        state = self._states.get(restaurant_id)
        if state is None or state.phase is not Phase.PENDING:
            return
        if state.timer is not None:
            state.timer.cancel()
        del self._states[restaurant_id]
        logger.debug("Cancelled pending update for restaurant %s", restaurant_id)

    def cancel_all_pending(self) -> None:
        for restaurant_id in list(self._states):
            self.cancel_pending(restaurant_id)

    def set_debounce_delay(self, seconds: float) -> None:
        self.debounce_delay = max(MIN_DEBOUNCE_SECONDS, seconds)
        logger.info("Debounce delay set to %ss", self.debounce_delay)

    async def sweep(self) -> dict[str, bool]:
        """Refresh every restaurant that currently has an observer."""
        watched = sorted({o.restaurant_id for o in self._observers.values() if o.restaurant_id is not None})
        results = {}
        for restaurant_id in watched:
            try:
                await self.force_update(restaurant_id)
                results[restaurant_id] = True
            except TableRateError as exc:
                logger.warning("Sweep failed for %s: %s", restaurant_id, exc)
                results[restaurant_id] = False
        return results

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def phase(self, restaurant_id: str) -> Phase:
        state = self._states.get(restaurant_id)
        return state.phase if state else Phase.IDLE

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "debounce_delay": self.debounce_delay,
            "observers": len(self._observers),
            "global_observers": sum(1 for o in self._observers.values() if o.restaurant_id is None),
            "pending": sorted(k for k, s in self._states.items() if s.phase is Phase.PENDING),
            "recomputing": sorted(k for k, s in self._states.items() if s.phase is Phase.RECOMPUTING),
        }

    def metrics(self) -> dict[str, Any]:
        recent = self.engine.history(limit=100)
        counts = Counter(entry["restaurant_id"] for entry in recent)
        return {
            "observers": len(self._observers),
            "pending_updates": sum(1 for s in self._states.values() if s.phase is Phase.PENDING),
            "recent_calculations": len(recent),
            "recomputations": self.recomputations,
            "failures": self.failures,
            "notifications": self.notifications,
            "most_active_restaurants": [
                {"restaurant_id": rid, "calculation_count": n} for rid, n in counts.most_common(5)
            ],
        }
