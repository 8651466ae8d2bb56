import asyncio
from unittest.mock import MagicMock

import pytest

from steadyfetch.core.services.optimistic_queue import OptimisticMutationQueue
from steadyfetch.domain.events.data_events import OptimisticRollback
from steadyfetch.domain.models.common import OptimisticOptions
from steadyfetch.domain.models.state import OperationStatus, OptimisticState
from steadyfetch.infrastructure.cache.cache_store import CacheStore


@pytest.fixture
def queue(events):
    """Fixture to create a queue with a short rollback window."""
    return OptimisticMutationQueue(OptimisticOptions(rollback_delay=0.01), events=events)


def _remote(result=None, error=None, delay=0.0, log=None, name="remote"):
    async def remote():
        if log is not None:
            log.append(f"{name}:start")
        if delay:
            await asyncio.sleep(delay)
        if log is not None:
            log.append(f"{name}:end")
        if error is not None:
            raise error
        return result
    return remote


@pytest.mark.asyncio
async def test_confirmed_value_replaces_optimistic_value(queue: OptimisticMutationQueue):
    queue.seed("likes", 1)
    on_success = MagicMock()

    operation = await queue.update("likes", 2, _remote(result=3), on_success=on_success)

    assert operation.status is OperationStatus.SUCCESS
    assert operation.id == "likes#1"
    assert operation.duration is not None
    assert queue.state("likes") == OptimisticState(data=3)
    on_success.assert_called_once_with(3)


@pytest.mark.asyncio
async def test_remote_without_result_keeps_optimistic_value(queue: OptimisticMutationQueue):
    queue.seed("title", "old")

    await queue.update("title", lambda previous: previous.upper(), _remote())

    assert queue.state("title").data == "OLD"


@pytest.mark.asyncio
async def test_failure_keeps_optimistic_value_during_rollback_window(events, recorded_events):
    queue = OptimisticMutationQueue(OptimisticOptions(rollback_delay=0.1), events=events)
    queue.seed("likes", 1)
    calls = []
    options = OptimisticOptions(
        rollback_delay=0.1,
        on_error=lambda error, snapshot: calls.append(("error", str(error), snapshot)),
        on_rollback=lambda snapshot: calls.append(("rollback", snapshot)),
    )

    pending = asyncio.ensure_future(queue.update("likes", 2, _remote(error=ValueError("nope"), delay=0.01), options))
    await asyncio.sleep(0.04)

    during = queue.state("likes")
    assert during.data == 2
    assert during.is_rolling_back is True
    assert during.error == "nope"
    assert calls == [("error", "nope", 1)]

    operation = await pending

    assert operation.status is OperationStatus.ROLLED_BACK
    assert queue.state("likes") == OptimisticState(data=1)
    assert calls == [("error", "nope", 1), ("rollback", 1)]
    rollbacks = [e for e in recorded_events if isinstance(e, OptimisticRollback)]
    assert [(e.key, e.reason) for e in rollbacks] == [("likes", "ValueError")]


@pytest.mark.asyncio
async def test_updates_to_one_key_resolve_in_order(queue: OptimisticMutationQueue):
    queue.seed("counter", 0)
    log = []

    first, second = await asyncio.gather(
        queue.update("counter", lambda n: n + 1, _remote(error=ValueError("x"), delay=0.02, log=log, name="first")),
        queue.update("counter", lambda n: n + 10, _remote(log=log, name="second")),
    )

    assert log == ["first:start", "first:end", "second:start", "second:end"]
    assert first.status is OperationStatus.ROLLED_BACK
    assert second.status is OperationStatus.SUCCESS
    assert queue.state("counter").data == 10


@pytest.mark.asyncio
async def test_updates_to_different_keys_run_concurrently(queue: OptimisticMutationQueue):
    log = []

    await asyncio.gather(
        queue.update("a", 1, _remote(delay=0.02, log=log, name="a")),
        queue.update("b", 2, _remote(delay=0.02, log=log, name="b")),
    )

    assert log[:2] == ["a:start", "b:start"]
    assert (queue.state("a").data, queue.state("b").data) == (1, 2)


@pytest.mark.asyncio
async def test_cancel_previous_restores_snapshot_and_supersedes(queue: OptimisticMutationQueue):
    queue.seed("vote", 0)
    superseded = asyncio.ensure_future(queue.update("vote", 5, _remote(result="server", delay=1.0)))
    await asyncio.sleep(0.01)
    assert queue.state("vote").data == 5

    latest = await queue.update("vote", 7, _remote(), cancel_previous=True)
    earlier = await asyncio.wait_for(superseded, timeout=1)

    assert earlier.status is OperationStatus.ROLLED_BACK
    assert latest.status is OperationStatus.SUCCESS
    assert queue.state("vote").data == 7


@pytest.mark.asyncio
async def test_cancel_restores_snapshot(queue: OptimisticMutationQueue):
    queue.seed("rating", 3)
    pending = asyncio.ensure_future(queue.update("rating", 5, _remote(delay=1.0)))
    await asyncio.sleep(0.01)

    assert queue.is_active("rating")
    assert queue.active_count() == 1
    assert queue.state("rating").is_pending is True

    assert queue.cancel("rating") == 1
    assert queue.state("rating") == OptimisticState(data=3)

    operation = await asyncio.wait_for(pending, timeout=1)
    assert operation.status is OperationStatus.ROLLED_BACK
    assert not queue.is_active("rating")


@pytest.mark.asyncio
async def test_success_invalidates_cache_patterns(events):
    cache = CacheStore()
    queue = OptimisticMutationQueue(OptimisticOptions(rollback_delay=0), cache_store=cache, events=events)
    await cache.set("races:1", "fields")
    await cache.set("meetings:1", "venues")

    await queue.update("race", 1, _remote(error=ValueError("down")), invalidate_patterns=["races:*"])
    assert await cache.get("races:1") == "fields"

    await queue.update("race", 1, _remote(), invalidate_patterns=["races:*"])
    assert await cache.get("races:1") is None
    assert await cache.get("meetings:1") == "venues"


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_the_update(queue: OptimisticMutationQueue):
    def explode(_value):
        raise RuntimeError("callback bug")

    operation = await queue.update("k", 1, _remote(), on_success=explode)

    assert operation.status is OperationStatus.SUCCESS
    assert queue.state("k").data == 1


@pytest.mark.asyncio
async def test_history_is_bounded(events):
    queue = OptimisticMutationQueue(OptimisticOptions(rollback_delay=0), events=events, history_limit=3)
    for value in range(5):
        await queue.update("k", value, _remote())

    assert [op.id for op in queue.history()] == ["k#3", "k#4", "k#5"]
    queue.clear_history()
    assert queue.history() == []


@pytest.mark.asyncio
async def test_wait_for_all_and_listeners(queue: OptimisticMutationQueue):
    seen = []
    unsubscribe = queue.subscribe(lambda key, state: seen.append((key, state.data, state.is_pending)))

    asyncio.ensure_future(queue.update("a", 1, _remote(delay=0.01)))
    asyncio.ensure_future(queue.update("b", 2, _remote(delay=0.01)))
    await asyncio.sleep(0)
    await queue.wait_for_all()

    assert queue.active_count() == 0
    assert ("a", 1, True) in seen
    assert ("a", 1, False) in seen
    unsubscribe()
    queue.seed("c", 3)
    assert all(key != "c" for key, _, _ in seen)


def test_reset_drops_state(queue: OptimisticMutationQueue):
    queue.seed("a", 1)
    queue.seed("b", 2)

    queue.reset("a")
    assert queue.state("a") == OptimisticState()
    assert queue.state("b").data == 2

    queue.reset()
    assert queue.state("b") == OptimisticState()
