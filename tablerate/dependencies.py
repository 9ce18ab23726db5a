import asyncio
import secrets
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from fastapi import Header, HTTPException, Request

from .config import Settings
from .services.aggregation import AggregationEngine
from .services.connectivity import ConnectionMonitor, ConnectivityPolicy
from .services.fraud import FraudDetector, FraudPolicy
from .services.identity import IdentityProbe
from .services.offline import OfflineContinuity
from .services.propagation import ChangePropagator, ObserverHandle
from .services.rate_limiter import RateLimiter
from .services.submission import RatingService
from .services.validation import ValidationGate
from .storage.base import RatingStore
from .storage.local import LocalStore
from .utils.clock import utcnow
from .utils.logging import SecurityEventLog


@dataclass
class Services:
    """Everything the routers need, built once per application."""

    settings: Settings
    store: RatingStore
    local: LocalStore
    events: SecurityEventLog
    identity: IdentityProbe
    gate: ValidationGate
    engine: AggregationEngine
    propagator: ChangePropagator
    monitor: ConnectionMonitor
    policy: ConnectivityPolicy
    ratings: RatingService
    offline: OfflineContinuity
    _mirror: Optional[ObserverHandle] = field(default=None, repr=False)

    async def start(self) -> None:
        await self.offline.purge_expired()
        await self.propagator.start()
        # the propagator drops its observers on stop, so the mirror is attached per run
        if self._mirror is None:
            self._mirror = self.propagator.subscribe_all(self.offline.mirror)
        await self.monitor.start()

    async def stop(self) -> None:
        await self.monitor.stop()
        if self._mirror is not None:
            self._mirror.unsubscribe()
            self._mirror = None
        await self.propagator.stop()


def build_services(
    settings: Settings,
    store: RatingStore,
    *,
    local: Optional[LocalStore] = None,
    now=utcnow,
    wall_clock=time.time,
    monotonic=time.monotonic,
    sleep=asyncio.sleep,
) -> Services:
    """
    Wires the rating pipeline around a store. Clocks and sleep are injectable
    so tests can drive time explicitly.
    """
    local = local or LocalStore(settings.LOCAL_DB_PATH)
    events = SecurityEventLog(store, clock=now)

    rate_limiter = RateLimiter.from_settings(settings, clock=wall_clock)
    fraud = FraudDetector(
        FraudPolicy.from_settings(settings),
        clock=wall_clock,
        cleanup_interval=settings.RATE_LIMIT_CLEANUP_SECONDS,
    )

    gate = ValidationGate(
        store,
        rate_limiter,
        fraud,
        events,
        consistency_tolerance=settings.CONSISTENCY_TOLERANCE,
        cooldown=timedelta(hours=settings.DUPLICATE_COOLDOWN_HOURS),
        max_clock_skew=timedelta(seconds=settings.MAX_CLOCK_SKEW_SECONDS),
        max_age=timedelta(days=settings.MAX_RATING_AGE_DAYS),
        retry_attempts=settings.RETRY_ATTEMPTS,
        retry_delay=settings.RETRY_DELAY_SECONDS,
        now=now,
        sleep=sleep,
    )
    engine = AggregationEngine(
        store,
        cache_ttl=settings.AGGREGATE_CACHE_TTL_SECONDS,
        half_life_days=settings.WEIGHT_HALF_LIFE_DAYS,
        now=now,
        monotonic=monotonic,
    )
    propagator = ChangePropagator(
        store,
        engine,
        debounce_delay=settings.DEBOUNCE_SECONDS,
        sweep_interval=settings.SWEEP_INTERVAL_SECONDS,
    )
    monitor = ConnectionMonitor(probe=store.ping, check_interval=settings.CONNECTIVITY_CHECK_SECONDS)
    policy = ConnectivityPolicy(monitor)
    ratings = RatingService(
        store,
        gate,
        retry_attempts=settings.RETRY_ATTEMPTS,
        retry_delay=settings.RETRY_DELAY_SECONDS,
        now=now,
        sleep=sleep,
    )
    offline = OfflineContinuity(
        local,
        engine,
        ratings,
        policy,
        cache_ttl=settings.OFFLINE_CACHE_TTL_SECONDS,
        now=now,
    )
    return Services(
        settings=settings,
        store=store,
        local=local,
        events=events,
        identity=IdentityProbe(local, clock=now),
        gate=gate,
        engine=engine,
        propagator=propagator,
        monitor=monitor,
        policy=policy,
        ratings=ratings,
        offline=offline,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(None),
):
    """Requires the configured admin key; routes stay closed when none is set"""
    expected = request.app.state.services.settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(status_code=403, detail="Admin access is not configured")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=403, detail="Admin privileges required")
