import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tablerate.errors import TransientInfrastructureError
from tablerate.schemas.rating import Rating
from tablerate.services.aggregation import (
    AggregationEngine,
    confidence_for,
    rating_consistency,
    rating_trend,
    round_half_up,
    summarize,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_ratings(scores, restaurant_id="rest-1", spacing=timedelta(0)):
    return [
        Rating(
            id=f"r{index}",
            restaurant_id=restaurant_id,
            user_id=f"user-{index:010d}",
            rating=score,
            created_at=NOW - spacing * (len(scores) - 1 - index),
        )
        for index, score in enumerate(scores)
    ]


def seed(store, restaurant_id, scores):
    for index, score in enumerate(scores):
        asyncio.run(
            store.create_rating(
                {"restaurant_id": restaurant_id, "user_id": f"user-{restaurant_id}-{index:04d}", "rating": score}
            )
        )


def test_summary_of_five_ratings():
    aggregate = summarize("rest-1", make_ratings([5, 5, 4, 3, 5]), NOW)

    assert aggregate.average_score == 4.4
    assert aggregate.weighted_average == 4.4
    assert aggregate.median == 5
    assert aggregate.mode == 5
    assert aggregate.total_ratings == 5
    assert aggregate.distribution == {1: 0, 2: 0, 3: 1, 4: 1, 5: 3}
    assert aggregate.standard_deviation == 0.8
    assert aggregate.confidence_score == 0.8
    assert sum(aggregate.distribution.values()) == aggregate.total_ratings


def test_empty_rating_set_gives_zero_aggregate():
    aggregate = summarize("rest-1", [], NOW)

    assert aggregate.total_ratings == 0
    assert aggregate.average_score == 0
    assert aggregate.mode == 0
    assert aggregate.confidence_score == 0
    assert aggregate.distribution == {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}


def test_mode_ties_resolve_to_lowest_score():
    aggregate = summarize("rest-1", make_ratings([3, 5, 5, 3]), NOW)

    assert aggregate.mode == 3
    assert aggregate.median == 4.0


def test_recent_ratings_weigh_more():
    # a 1 that is one half-life old counts half as much as today's 5
    ratings = make_ratings([1, 5], spacing=timedelta(days=30))
    aggregate = summarize("rest-1", ratings, NOW, half_life_days=30)

    assert aggregate.average_score == 3.0
    assert aggregate.weighted_average == 3.7


def test_future_dated_ratings_are_not_overweighted():
    ratings = make_ratings([2, 4])
    ahead = ratings[0].model_copy(update={"created_at": NOW + timedelta(days=3)})

    aggregate = summarize("rest-1", [ahead, ratings[1]], NOW)

    assert aggregate.weighted_average == 3.0


@pytest.mark.parametrize(
    "count, expected",
    [(0, 0.0), (1, 0.3), (2, 0.5), (3, 0.7), (4, 0.8), (5, 0.8), (6, 0.9), (10, 0.9), (11, 1.0), (500, 1.0)],
)
def test_confidence_steps(count, expected):
    assert confidence_for(count) == expected


def test_rounding_is_half_up():
    assert round_half_up(2.25, 1) == 2.3
    assert round_half_up(4.45, 1) == 4.5
    assert round_half_up(0.125, 2) == 0.13


def test_trend_and_consistency():
    ratings = make_ratings([2, 2, 4, 5], spacing=timedelta(days=1))

    assert rating_trend(ratings) == "improving"
    assert rating_trend(list(reversed(make_ratings([5, 4, 2, 2], spacing=timedelta(days=1))))) == "declining"
    assert rating_trend(make_ratings([4, 4, 4], spacing=timedelta(days=1))) == "stable"
    assert rating_trend(make_ratings([4])) == "insufficient_data"
    assert rating_consistency(ratings) == 0.35
    assert rating_consistency(make_ratings([4, 4])) == 1.0
    assert rating_consistency([]) == 0.0


def test_forced_recomputations_agree(services, store):
    seed(store, "rest-1", [5, 4, 4, 2])

    first = asyncio.run(services.engine.compute_aggregate("rest-1", force_refresh=True))
    second = asyncio.run(services.engine.compute_aggregate("rest-1", force_refresh=True))

    assert first == second
    assert services.engine.computations == 2


def test_aggregate_is_cached_until_ttl(services, store, clock):
    seed(store, "rest-1", [4, 5])
    engine = services.engine

    asyncio.run(engine.compute_aggregate("rest-1"))
    asyncio.run(engine.compute_aggregate("rest-1"))
    assert engine.computations == 1

    clock.advance(31)
    asyncio.run(engine.compute_aggregate("rest-1"))
    assert engine.computations == 2


def test_cache_entries_and_invalidation(services, store):
    seed(store, "rest-1", [4])
    engine = services.engine
    asyncio.run(engine.compute_aggregate("rest-1"))

    status = engine.cache_status()
    assert status["size"] == 1
    assert status["entries"][0]["key"] == "rest-1"

    engine.invalidate("rest-1")
    assert engine.cache_status()["size"] == 0


def test_concurrent_requests_share_one_computation(services, store):
    seed(store, "rest-1", [3, 4, 5])
    engine = services.engine

    async def scenario():
        return await asyncio.gather(
            *(engine.compute_aggregate("rest-1", force_refresh=True) for _ in range(5))
        )

    results = asyncio.run(scenario())

    assert engine.computations == 1
    assert all(result == results[0] for result in results)
    assert engine.cache_status()["in_flight"] == []


def test_forced_refresh_does_not_reuse_an_older_snapshot(services, store, monkeypatch):
    seed(store, "rest-1", [5])
    engine = services.engine
    original = store.query_ratings
    calls = []

    async def scenario():
        snapshotted = asyncio.Event()
        release = asyncio.Event()

        async def slow_query(*args, **kwargs):
            ratings = await original(*args, **kwargs)
            calls.append(len(ratings))
            if len(calls) == 1:
                snapshotted.set()
                await release.wait()
            return ratings

        monkeypatch.setattr(store, "query_ratings", slow_query)
        plain = asyncio.create_task(engine.compute_aggregate("rest-1"))
        await snapshotted.wait()

        await store.create_rating({"restaurant_id": "rest-1", "user_id": "user-late-000001", "rating": 3})
        forced = asyncio.create_task(engine.compute_aggregate("rest-1", force_refresh=True))
        await asyncio.sleep(0)
        release.set()
        return await plain, await forced

    plain, forced = asyncio.run(scenario())

    assert plain.total_ratings == 1
    assert forced.total_ratings == 2
    assert forced.average_score == 4.0
    assert calls == [1, 2]
    assert asyncio.run(engine.compute_aggregate("rest-1")).total_ratings == 2


@pytest.mark.parametrize("scores", [[], [3], [4, 4, 4, 4], [1, 2, 3, 4, 5, 5]])
def test_distribution_accounts_for_every_rating(scores):
    aggregate = summarize("rest-1", make_ratings(scores), NOW)

    assert aggregate.total_ratings == len(scores)
    assert sum(aggregate.distribution.values()) == aggregate.total_ratings


def test_summary_is_written_back(services, store):
    seed(store, "rest-1", [5, 5, 4, 3, 5])

    asyncio.run(services.engine.compute_aggregate("rest-1"))

    summary = store.summaries["rest-1"]
    assert summary["average_score"] == 4.4
    assert summary["total_ratings"] == 5
    assert summary["distribution"] == {"1": 0, "2": 0, "3": 1, "4": 1, "5": 3}
    assert "rating_last_updated" in summary


def test_summary_write_failure_still_returns_aggregate(services, store, monkeypatch):
    seed(store, "rest-1", [4])

    async def broken(restaurant_id, patch):
        raise TransientInfrastructureError("restaurants table locked")

    monkeypatch.setattr(store, "update_restaurant_summary", broken)
    aggregate = asyncio.run(services.engine.compute_aggregate("rest-1"))

    assert aggregate.total_ratings == 1


def test_unreachable_store_raises_transient_error(services, store):
    store.available = False

    with pytest.raises(TransientInfrastructureError):
        asyncio.run(services.engine.compute_aggregate("rest-1"))
    assert services.engine.cache_status()["in_flight"] == []


def test_unexpected_store_error_is_treated_as_transient(services, store, monkeypatch):
    async def broken(*args, **kwargs):
        raise ConnectionResetError("peer reset")

    monkeypatch.setattr(store, "query_ratings", broken)

    with pytest.raises(TransientInfrastructureError):
        asyncio.run(services.engine.compute_aggregate("rest-1"))


def test_statistics(services, store, clock):
    for score in (2, 2, 4, 5):
        seed(store, "rest-1", [score])
        clock.advance(60)

    stats = asyncio.run(services.engine.get_statistics("rest-1"))

    assert stats.trend == "improving"
    assert stats.consistency == 0.35
    assert stats.aggregate.total_ratings == 4
    assert stats.recent_ratings[0]["rating"] == 5
    assert stats.recent_ratings[0]["user_id"].endswith("...")


def test_batch_recalculate_reports_each_restaurant(store, clock):
    seed(store, "rest-1", [4])
    seed(store, "rest-2", [2, 3])
    engine = AggregationEngine(store, batch_pause=0, now=clock.now, monotonic=clock.time)

    results = asyncio.run(engine.recalculate_all())

    assert [r["restaurant_id"] for r in results] == ["rest-1", "rest-2"]
    assert all(r["success"] for r in results)
    assert results[1]["aggregate"].total_ratings == 2
    assert len(engine.history()) == 2
    assert engine.history("rest-2")[0]["ratings_count"] == 2


def test_batch_recalculate_continues_past_failures(store, clock):
    engine = AggregationEngine(store, batch_pause=0, now=clock.now, monotonic=clock.time)
    store.available = False

    results = asyncio.run(engine.batch_recalculate(["rest-1", "rest-2"]))

    assert [r["success"] for r in results] == [False, False]
    assert "unavailable" in results[0]["error"]
