import asyncio

import pytest

from tablerate.errors import TransientInfrastructureError
from tablerate.services.aggregation import AggregationEngine
from tablerate.services.propagation import ChangePropagator, Phase

DEBOUNCE = 0.1
SETTLE = 0.3


@pytest.fixture()
def engine(store, clock):
    return AggregationEngine(store, batch_pause=0, now=clock.now, monotonic=clock.time)


@pytest.fixture()
def propagator(store, engine):
    return ChangePropagator(store, engine, debounce_delay=DEBOUNCE)


async def add_rating(store, restaurant_id="rest-1", score=4, index=0, **extra):
    return await store.create_rating(
        {"restaurant_id": restaurant_id, "user_id": f"user-{index:010d}", "rating": score, **extra}
    )


def test_burst_of_changes_causes_one_recomputation(store, engine, propagator):
    seen = []

    async def scenario():
        await propagator.start()
        propagator.subscribe("rest-1", lambda rid, aggregate: seen.append(aggregate))
        for index in range(5):
            await add_rating(store, index=index)
        assert propagator.phase("rest-1") is Phase.PENDING
        await asyncio.sleep(SETTLE)
        await propagator.stop()

    asyncio.run(scenario())

    assert engine.computations == 1
    assert len(seen) == 1
    assert seen[0].total_ratings == 5
    assert propagator.phase("rest-1") is Phase.IDLE


def test_each_restaurant_debounces_independently(store, engine, propagator):
    seen = []

    async def scenario():
        await propagator.start()
        propagator.subscribe_all(lambda rid, aggregate: seen.append(rid))
        await add_rating(store, "rest-1")
        await add_rating(store, "rest-2")
        await add_rating(store, "rest-1", index=1)
        await asyncio.sleep(SETTLE)
        await propagator.stop()

    asyncio.run(scenario())

    assert sorted(seen) == ["rest-1", "rest-2"]
    assert engine.computations == 2


def test_change_during_recomputation_schedules_one_rerun(store, engine, propagator, monkeypatch):
    release = asyncio.Event()
    original = store.query_ratings
    seen = []

    async def slow_query(*args, **kwargs):
        await release.wait()
        return await original(*args, **kwargs)

    async def scenario():
        await propagator.start()
        propagator.subscribe("rest-1", lambda rid, aggregate: seen.append(aggregate.total_ratings))
        await add_rating(store, index=0)
        await asyncio.sleep(DEBOUNCE + 0.05)
        assert propagator.phase("rest-1") is Phase.RECOMPUTING

        await add_rating(store, index=1)
        await add_rating(store, index=2)
        assert propagator.phase("rest-1") is Phase.RECOMPUTING
        release.set()
        await asyncio.sleep(SETTLE)
        await propagator.stop()

    monkeypatch.setattr(store, "query_ratings", slow_query)
    asyncio.run(scenario())

    assert propagator.recomputations == 2
    assert seen == [3, 3]


def test_hidden_ratings_do_not_trigger(store, engine, propagator):
    async def scenario():
        await propagator.start()
        await add_rating(store, moderation_status="pending")
        assert propagator.phase("rest-1") is Phase.IDLE
        await asyncio.sleep(SETTLE)
        await propagator.stop()

    asyncio.run(scenario())

    assert engine.computations == 0


def test_force_update_skips_debounce(store, engine, propagator):
    seen = []

    async def scenario():
        await propagator.start()
        propagator.subscribe("rest-1", lambda rid, aggregate: seen.append(aggregate))
        await add_rating(store)
        aggregate = await propagator.force_update("rest-1")
        await asyncio.sleep(SETTLE)
        await propagator.stop()
        return aggregate

    aggregate = asyncio.run(scenario())

    assert aggregate.total_ratings == 1
    assert engine.computations == 1
    assert seen == [aggregate]


def test_force_update_failure_raises(store, engine, propagator):
    async def scenario():
        store.available = False
        await propagator.force_update("rest-1")

    with pytest.raises(TransientInfrastructureError):
        asyncio.run(scenario())
    assert propagator.failures == 1
    assert propagator.phase("rest-1") is Phase.IDLE


def test_failing_observer_does_not_starve_others(store, engine, propagator):
    seen = []

    def broken(rid, aggregate):
        raise RuntimeError("socket closed")

    async def polite(rid, aggregate):
        seen.append(rid)

    async def scenario():
        propagator.subscribe("rest-1", broken)
        propagator.subscribe("rest-1", polite)
        await propagator.force_update("rest-1")

    asyncio.run(scenario())

    assert seen == ["rest-1"]
    assert propagator.notifications == 1


def test_unsubscribed_observer_is_not_called(store, engine, propagator):
    seen = []

    async def scenario():
        handle = propagator.subscribe("rest-1", lambda rid, aggregate: seen.append(rid))
        handle.unsubscribe()
        await propagator.force_update("rest-1")

    asyncio.run(scenario())

    assert seen == []
    assert propagator.status()["observers"] == 0


def test_stop_cancels_pending_work_and_unsubscribes(store, engine, propagator):
    async def scenario():
        await propagator.start()
        assert store.subscriber_count == 1
        await add_rating(store)
        assert propagator.status()["pending"] == ["rest-1"]
        await propagator.stop()
        await asyncio.sleep(SETTLE)

    asyncio.run(scenario())

    assert engine.computations == 0
    assert store.subscriber_count == 0
    assert propagator.running is False


def test_cancel_pending(store, engine, propagator):
    async def scenario():
        await propagator.start()
        await add_rating(store)
        propagator.cancel_pending("rest-1")
        await asyncio.sleep(SETTLE)
        await propagator.stop()

    asyncio.run(scenario())

    assert engine.computations == 0


def test_debounce_delay_has_a_floor(propagator):
    propagator.set_debounce_delay(0.01)

    assert propagator.debounce_delay == 0.1


def test_sweep_refreshes_watched_restaurants(store, engine, propagator):
    async def scenario():
        await add_rating(store, "rest-1")
        propagator.subscribe("rest-1", lambda rid, aggregate: None)
        propagator.subscribe("rest-2", lambda rid, aggregate: None)
        return await propagator.sweep()

    assert asyncio.run(scenario()) == {"rest-1": True, "rest-2": True}
    assert engine.computations == 2


def test_metrics_rank_most_active_restaurants(store, engine, propagator):
    async def scenario():
        for _ in range(3):
            await propagator.force_update("rest-1")
        await propagator.force_update("rest-2")

    asyncio.run(scenario())
    metrics = propagator.metrics()

    assert metrics["recomputations"] == 4
    assert metrics["most_active_restaurants"][0] == {"restaurant_id": "rest-1", "calculation_count": 3}
