"""Shared pytest fixtures for the tablerate test-suite.

Provides an in-process rating store, a controllable clock, a temporary
SQLite file for the offline store and a fully wired service container, so
test modules can focus on behaviour rather than boilerplate.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Environment overrides (must be set BEFORE app import)
# ---------------------------------------------------------------------------

os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from tablerate.config import Settings  # noqa: E402
from tablerate.dependencies import build_services  # noqa: E402
from tablerate.storage.local import LocalStore  # noqa: E402
from tablerate.storage.memory import MemoryRatingStore  # noqa: E402


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


async def no_sleep(delay: float) -> None:
    return None


def rating_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "restaurant_id": "rest-1",
        "user_id": "user-0123456789abcdef",
        "user_name": "Maria Silva",
        "rating": 4,
        "quality": 4,
        "taste": 4,
        "service": 3,
        "comment": "Great food and friendly staff",
        "client": {"user_agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"},
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> MemoryRatingStore:
    return MemoryRatingStore(clock=clock.now)


@pytest.fixture()
def local_store(tmp_path) -> LocalStore:
    return LocalStore(str(tmp_path / "offline.db"))


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        LOCAL_DB_PATH=str(tmp_path / "offline.db"),
        DEBOUNCE_SECONDS=0.1,
        RETRY_DELAY_SECONDS=0,
        CONNECTIVITY_CHECK_SECONDS=0,
    )


@pytest.fixture()
def services(settings: Settings, store: MemoryRatingStore, local_store: LocalStore, clock: FakeClock):
    return build_services(
        settings,
        store,
        local=local_store,
        now=clock.now,
        wall_clock=clock.time,
        monotonic=clock.time,
        sleep=no_sleep,
    )
