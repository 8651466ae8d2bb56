import asyncio

import pytest

from steadyfetch.domain.errors import OfflineUnavailableError, TransientNetworkError
from steadyfetch.domain.events.data_events import StaleDataServed, SyncOperationQueued, SyncOperationReplayed
from steadyfetch.domain.models.common import FetchStrategy
from steadyfetch.infrastructure.cache.offline_cache import CacheConfig, OfflineCache
from steadyfetch.infrastructure.connectivity.monitor import ConnectivityMonitor


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def offline_cache(memory_store, connectivity, clock, events):
    """Fixture to create an OfflineCache over an in-memory store."""
    return OfflineCache(memory_store, connectivity=connectivity, clock=clock, events=events)


def _fetcher(value, calls=None):
    async def fetch():
        if calls is not None:
            calls.append(value)
        return value
    return fetch


def _failing(exc):
    async def fetch():
        raise exc
    return fetch


# --- Strategies ---

@pytest.mark.asyncio
async def test_cache_first_serves_fresh_cache_without_fetching(offline_cache: OfflineCache):
    calls = []
    assert await offline_cache.get_data("races:1", _fetcher("v1", calls), "races") == "v1"
    assert await offline_cache.get_data("races:1", _fetcher("v2", calls), "races") == "v1"
    assert calls == ["v1"]


@pytest.mark.asyncio
async def test_cache_first_refetches_once_expired(offline_cache: OfflineCache, clock):
    await offline_cache.get_data("races:1", _fetcher("v1"), "races")
    clock.advance(10 * 60 + 1)

    assert await offline_cache.get_data("races:1", _fetcher("v2"), "races") == "v2"


@pytest.mark.asyncio
async def test_cache_first_serves_stale_when_refetch_fails(offline_cache: OfflineCache, clock, recorded_events):
    await offline_cache.get_data("races:1", _fetcher("v1"), "races")
    clock.advance(10 * 60 + 1)

    assert await offline_cache.get_data("races:1", _failing(RuntimeError("boom")), "races") == "v1"
    stale = [e for e in recorded_events if isinstance(e, StaleDataServed)]
    assert [e.reason for e in stale] == ["fetch error: RuntimeError"]


@pytest.mark.asyncio
async def test_offline_serves_cache_regardless_of_age(offline_cache: OfflineCache, connectivity, clock, recorded_events):
    await offline_cache.get_data("races:1", _fetcher("v1"), "races")
    clock.advance(24 * 60 * 60)
    connectivity.set_online(False)
    calls = []

    assert await offline_cache.get_data("races:1", _fetcher("v2", calls), "races") == "v1"
    assert calls == []
    assert [e.reason for e in recorded_events if isinstance(e, StaleDataServed)] == ["offline"]


@pytest.mark.parametrize("key, strategy_name", [("races:1", "races"), ("meetings:today", "meetings")])
@pytest.mark.asyncio
async def test_offline_read_of_fresh_entry_is_flagged_stale(
    offline_cache: OfflineCache, connectivity, recorded_events, key, strategy_name
):
    await offline_cache.get_data(key, _fetcher("v1"), strategy_name)
    connectivity.set_online(False)
    calls = []

    assert await offline_cache.get_data(key, _fetcher("v2", calls), strategy_name) == "v1"
    assert calls == []
    stale = [e for e in recorded_events if isinstance(e, StaleDataServed)]
    assert [(e.key, e.reason, e.age_seconds) for e in stale] == [(key, "offline", 0)]


@pytest.mark.asyncio
async def test_offline_without_cache_raises(offline_cache: OfflineCache, connectivity):
    connectivity.set_online(False)

    with pytest.raises(OfflineUnavailableError, match="races:9"):
        await offline_cache.get_data("races:9", _fetcher("v"), "races")


@pytest.mark.asyncio
async def test_network_first_always_fetches_when_online(offline_cache: OfflineCache):
    calls = []
    await offline_cache.get_data("profile", _fetcher("p1", calls))
    assert await offline_cache.get_data("profile", _fetcher("p2", calls)) == "p2"
    assert calls == ["p1", "p2"]
    assert offline_cache.config_for("unknown").strategy is FetchStrategy.NETWORK_FIRST


@pytest.mark.asyncio
async def test_network_first_falls_back_to_cache_on_error(offline_cache: OfflineCache):
    await offline_cache.get_data("profile", _fetcher("p1"))

    assert await offline_cache.get_data("profile", _failing(ConnectionError("reset"))) == "p1"


@pytest.mark.asyncio
async def test_network_first_without_cache_raises_classified_error(offline_cache: OfflineCache):
    with pytest.raises(TransientNetworkError):
        await offline_cache.get_data("profile", _failing(ConnectionError("reset")))


@pytest.mark.asyncio
async def test_stale_while_revalidate_returns_cache_and_refreshes(offline_cache: OfflineCache, memory_store):
    await offline_cache.get_data("meetings:today", _fetcher(["m1"]), "meetings")

    assert await offline_cache.get_data("meetings:today", _fetcher(["m2"]), "meetings") == ["m1"]
    await asyncio.sleep(0.01)

    record = await memory_store.get("cache/meetings:today")
    assert record["data"] == ["m2"]
    assert record["category"] == "meetings"


@pytest.mark.asyncio
async def test_stale_while_revalidate_blocks_on_expired_cache(offline_cache: OfflineCache, clock):
    await offline_cache.get_data("meetings:today", _fetcher(["m1"]), "meetings")
    clock.advance(5 * 60 + 1)

    assert await offline_cache.get_data("meetings:today", _fetcher(["m2"]), "meetings") == ["m2"]


@pytest.mark.asyncio
async def test_records_from_another_version_are_ignored(offline_cache: OfflineCache):
    await offline_cache.get_data("races:1", _fetcher("v1"), "races")
    offline_cache.register_cache(CacheConfig(name="races", version=2, max_age=600, strategy="cache-first"))

    assert await offline_cache.get_data("races:1", _fetcher("v2"), "races") == "v2"
    assert offline_cache.config_for("races").strategy is FetchStrategy.CACHE_FIRST


@pytest.mark.asyncio
async def test_values_over_category_size_limit_are_not_cached(offline_cache: OfflineCache, memory_store):
    offline_cache.register_cache(CacheConfig(name="tiny", max_size=5, strategy=FetchStrategy.CACHE_FIRST))

    assert await offline_cache.get_data("blob", _fetcher("x" * 20), "tiny") == "x" * 20
    assert await memory_store.get("cache/blob") is None


# --- Sync queue ---

@pytest.mark.asyncio
async def test_queue_for_sync_runs_immediately_when_online(offline_cache: OfflineCache):
    calls = []

    async def save():
        calls.append("save")

    assert await offline_cache.queue_for_sync(save) is None
    assert calls == ["save"]
    assert await offline_cache.pending_sync_entries() == []


@pytest.mark.asyncio
async def test_offline_mutations_replay_in_order_on_reconnect(
    offline_cache: OfflineCache, connectivity, memory_store, recorded_events
):
    connectivity.set_online(False)
    calls = []

    async def save_a():
        calls.append("a")

    async def save_b():
        calls.append("b")

    first = await offline_cache.queue_for_sync(save_a, {"race": 1})
    second = await offline_cache.queue_for_sync(save_b, {"race": 2})

    assert (first.id, first.operation) == (1, "save_a")
    assert (second.id, second.operation) == (2, "save_b")
    assert [r["key"] for r in await memory_store.iterate("syncQueue/")] == [
        "syncQueue/000000000001",
        "syncQueue/000000000002",
    ]
    assert len([e for e in recorded_events if isinstance(e, SyncOperationQueued)]) == 2

    connectivity.set_online(True)
    await asyncio.sleep(0.05)

    assert calls == ["a", "b"]
    assert await offline_cache.pending_sync_entries() == []


@pytest.mark.asyncio
async def test_failed_replay_stays_queued_and_later_entries_continue(
    offline_cache: OfflineCache, connectivity, recorded_events
):
    connectivity.set_online(False)
    attempts = []

    async def flaky():
        attempts.append("flaky")
        if len(attempts) == 1:
            raise ConnectionError("still flaky")

    async def steady():
        attempts.append("steady")

    await offline_cache.queue_for_sync(flaky)
    await offline_cache.queue_for_sync(steady)

    connectivity.set_online(True)
    await asyncio.sleep(0.05)

    replayed = [(e.entry_id, e.succeeded) for e in recorded_events if isinstance(e, SyncOperationReplayed)]
    assert replayed == [(1, False), (2, True)]
    remaining = await offline_cache.pending_sync_entries()
    assert [(entry.id, entry.attempts) for entry in remaining] == [(1, 1)]

    report = await offline_cache.process_sync_queue()
    assert (report.replayed, report.failed, report.remaining) == (1, 0, 0)
    assert attempts == ["flaky", "steady", "flaky"]


@pytest.mark.asyncio
async def test_process_sync_queue_does_nothing_while_offline(offline_cache: OfflineCache, connectivity):
    connectivity.set_online(False)

    async def save():
        raise AssertionError("must not run offline")

    await offline_cache.queue_for_sync(save)
    report = await offline_cache.process_sync_queue()

    assert (report.replayed, report.remaining) == (0, 1)


@pytest.mark.asyncio
async def test_entries_from_an_earlier_process_replay_through_handlers(memory_store, clock):
    earlier = OfflineCache(memory_store, connectivity=ConnectivityMonitor(online=False), clock=clock)

    async def unused():
        return None

    await earlier.queue_for_sync(unused, {"race": 7}, name="save_race")
    await earlier.queue_for_sync(unused, {"x": 1}, name="unknown_op")
    await earlier.close()

    received = []

    async def save_race(metadata):
        received.append(metadata)

    later = OfflineCache(
        memory_store,
        connectivity=ConnectivityMonitor(online=True),
        sync_handlers={"save_race": save_race},
        clock=clock,
    )
    report = await later.process_sync_queue()

    assert received == [{"race": 7}]
    assert (report.replayed, report.skipped, report.remaining) == (1, 1, 1)
    assert [entry.operation for entry in await later.pending_sync_entries()] == ["unknown_op"]


@pytest.mark.asyncio
async def test_sequence_continues_after_restart(memory_store, clock):
    first = OfflineCache(memory_store, connectivity=ConnectivityMonitor(online=False), clock=clock)

    async def op():
        return None

    await first.queue_for_sync(op, name="op")
    second = OfflineCache(memory_store, connectivity=ConnectivityMonitor(online=False), clock=clock)
    entry = await second.queue_for_sync(op, name="op")

    assert entry.id == 2


# --- Stats, maintenance, preferences ---

@pytest.mark.asyncio
async def test_cache_stats_group_by_category(offline_cache: OfflineCache, connectivity, clock):
    await offline_cache.get_data("races:1", _fetcher("a"), "races")
    await offline_cache.get_data("races:2", _fetcher("b"), "races")
    await offline_cache.get_data("profile", _fetcher("c"))
    connectivity.set_online(False)

    async def op():
        return None

    await offline_cache.queue_for_sync(op)
    stats = await offline_cache.get_cache_stats()

    assert stats.item_count == 3
    assert stats.categories == {"races": 2, "default": 1}
    assert stats.total_size == 9
    assert stats.oldest_item == clock()
    assert stats.pending_sync == 1


@pytest.mark.asyncio
async def test_clear_cache_keeps_queue_and_preferences(offline_cache: OfflineCache, connectivity):
    await offline_cache.get_data("races:1", _fetcher("a"), "races")
    await offline_cache.set_preference("theme", "dark")
    connectivity.set_online(False)

    async def op():
        return None

    await offline_cache.queue_for_sync(op)

    assert await offline_cache.clear_cache() == 1
    assert await offline_cache.get_preference("theme") == "dark"
    assert len(await offline_cache.pending_sync_entries()) == 1


@pytest.mark.asyncio
async def test_preferences_round_trip(offline_cache: OfflineCache):
    assert await offline_cache.get_preference("missing", default=3) == 3
    await offline_cache.set_preference("notifications", True)
    await offline_cache.set_preference("theme", "dark")

    assert await offline_cache.list_preferences() == {"notifications": True, "theme": "dark"}
