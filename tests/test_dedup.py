import asyncio

import pytest

from taskbridge.dedup import EventDeduplicator, InMemoryTTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_repeat_event_within_ttl_is_duplicate():
    clock = FakeClock()
    dedup = EventDeduplicator(InMemoryTTLCache(ttl_seconds=300, clock=clock))

    assert dedup.seen("evt-1") is False
    clock.now += 299
    assert dedup.seen("evt-1") is True


def test_event_is_new_again_after_ttl():
    clock = FakeClock()
    dedup = EventDeduplicator(InMemoryTTLCache(ttl_seconds=300, clock=clock))

    dedup.seen("evt-1")
    clock.now += 300
    assert dedup.seen("evt-1") is False


def test_missing_event_id_is_never_a_duplicate():
    dedup = EventDeduplicator()
    assert dedup.seen("") is False
    assert dedup.seen(None) is False
    assert dedup.seen(None) is False


def test_sweep_removes_only_expired_entries():
    clock = FakeClock()
    cache = InMemoryTTLCache(ttl_seconds=10, clock=clock)
    cache.add_if_absent("old")
    clock.now += 6
    cache.add_if_absent("new")
    clock.now += 5

    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.add_if_absent("new") is False


def test_cap_evicts_oldest_entry():
    clock = FakeClock()
    cache = InMemoryTTLCache(ttl_seconds=300, max_entries=2, clock=clock)
    cache.add_if_absent("a")
    clock.now += 1
    cache.add_if_absent("b")
    clock.now += 1
    cache.add_if_absent("c")

    assert len(cache) == 2
    assert cache.add_if_absent("b") is False
    assert cache.add_if_absent("a") is True


def test_rejects_non_positive_cap():
    with pytest.raises(ValueError):
        InMemoryTTLCache(max_entries=0)


@pytest.mark.asyncio
async def test_sweeper_stops_when_asked():
    clock = FakeClock()
    cache = InMemoryTTLCache(ttl_seconds=1, clock=clock)
    dedup = EventDeduplicator(cache)
    dedup.seen("evt-1")
    clock.now += 5

    sweeper = asyncio.create_task(dedup.run_sweeper(interval_seconds=0.01))
    await asyncio.sleep(0.05)
    dedup.stop()
    await asyncio.wait_for(sweeper, timeout=1)

    assert len(cache) == 0
