import asyncio

import pytest

from tablerate.errors import TransientInfrastructureError
from tablerate.services.retry import with_retry

from conftest import no_sleep, rating_payload


def test_create_strips_client_signals_and_tracks_review(services, store):
    result = asyncio.run(services.ratings.submit(rating_payload(client_ref="ref-1")))

    rating = store.ratings[result.rating_id]
    assert rating.client_ref == "ref-1"
    assert not hasattr(rating, "client")
    entry = store.tracking[("user-0123456789abcdef", "rest-1")]
    assert entry.has_reviewed
    assert entry.review_count == 1


def test_transient_write_failures_are_retried(services, store):
    store.failing_writes = 2

    result = asyncio.run(services.ratings.submit(rating_payload()))

    assert result.rating_id in store.ratings


def test_write_gives_up_after_configured_attempts(services, store):
    store.failing_writes = 3

    with pytest.raises(TransientInfrastructureError):
        asyncio.run(services.ratings.submit(rating_payload()))
    assert store.ratings == {}


def test_update_keeps_identity_columns(services, store, clock):
    first = asyncio.run(services.ratings.submit(rating_payload()))
    clock.advance(25 * 3600)

    asyncio.run(services.ratings.submit(rating_payload(rating=5, quality=5, taste=4, service=4)))

    rating = store.ratings[first.rating_id]
    assert rating.user_id == "user-0123456789abcdef"
    assert rating.restaurant_id == "rest-1"
    assert rating.rating == 5
    assert store.tracking[("user-0123456789abcdef", "rest-1")].review_count == 2


def test_tracking_failure_does_not_fail_the_write(services, store, monkeypatch):
    async def unavailable(entry):
        raise TransientInfrastructureError("tracking table offline")

    monkeypatch.setattr(store, "upsert_tracking", unavailable)
    result = asyncio.run(services.ratings.submit(rating_payload()))

    assert result.rating_id in store.ratings


def test_list_ratings_returns_visible_newest_first(services, store, clock):
    asyncio.run(services.ratings.submit(rating_payload(user_id="user-aaaaaaaaaa")))
    clock.advance(10)
    newest = asyncio.run(services.ratings.submit(rating_payload(user_id="user-bbbbbbbbbb")))

    ratings = asyncio.run(services.ratings.list_ratings("rest-1"))

    assert [r.id for r in ratings][0] == newest.rating_id
    assert len(ratings) == 2


def test_retry_passes_other_errors_through_immediately():
    calls = []

    async def operation():
        calls.append(1)
        raise KeyError("missing")

    with pytest.raises(KeyError):
        asyncio.run(with_retry(operation, attempts=3, delay=0, sleep=no_sleep))
    assert len(calls) == 1


def test_retry_backs_off_linearly():
    delays = []
    outcomes = [TransientInfrastructureError("down"), TransientInfrastructureError("down"), "ok"]

    async def record(delay):
        delays.append(delay)

    async def operation():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert asyncio.run(with_retry(operation, attempts=3, delay=0.5, sleep=record)) == "ok"
    assert delays == [0.5, 1.0]
