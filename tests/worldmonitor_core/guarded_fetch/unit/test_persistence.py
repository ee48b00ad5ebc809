import asyncio
from pathlib import Path

import pytest
from pydantic import BaseModel

from tests.worldmonitor_core.support.fakes import (
    BrokenCacheStore,
    CountingCacheStore,
    FakeClock,
    ScriptedOperation,
    StallingFirstWriteStore,
)
from worldmonitor_core.guarded_fetch import (
    BreakerConfig,
    CacheEntry,
    DataMode,
    FileCacheStore,
    GuardedFetch,
    InMemoryCacheStore,
    PydanticCacheCodec,
)
from worldmonitor_core.guarded_fetch.storage import AbstractCacheStore

pytestmark = pytest.mark.asyncio


class ProgressPoint(BaseModel):
    year: int
    value: float


def _persistent(
    store: AbstractCacheStore,
    *,
    name: str = "Progress Data",
    cache_ttl_ms: float = 3_600_000,
) -> GuardedFetch[list[ProgressPoint]]:
    return GuardedFetch(
        BreakerConfig(name=name, cache_ttl_ms=cache_ttl_ms, persist_cache=True),
        store=store,
        codec=PydanticCacheCodec(list[ProgressPoint]),
    )


_POINTS = [ProgressPoint(year=2020, value=28.2), ProgressPoint(year=2022, value=29.6)]


async def test_fresh_instance_is_seeded_from_persistent_store(
    fake_clock: FakeClock,
) -> None:
    store = InMemoryCacheStore()
    first = _persistent(store)
    assert await first.execute(ScriptedOperation(_POINTS), []) == _POINTS

    fake_clock.advance(60_000)
    restarted = _persistent(store)
    await restarted.hydrate()

    assert restarted.get_cached() == _POINTS
    operation = ScriptedOperation(RuntimeError("should not be called"))
    assert await restarted.execute(operation, []) == _POINTS
    assert operation.calls == 0
    assert restarted.status().cache_age_ms == 60_000


async def test_file_store_survives_new_store_instance(
    tmp_path: Path,
    fake_clock: FakeClock,
) -> None:
    first = _persistent(FileCacheStore(tmp_path))
    await first.execute(ScriptedOperation(_POINTS), [])

    restarted = _persistent(FileCacheStore(tmp_path))
    operation = ScriptedOperation(RuntimeError("should not be called"))

    assert await restarted.execute(operation, []) == _POINTS
    assert operation.calls == 0


async def test_stale_persisted_value_serves_as_degraded_result(
    fake_clock: FakeClock,
) -> None:
    store = InMemoryCacheStore()
    await _persistent(store, cache_ttl_ms=1_000).execute(
        ScriptedOperation(_POINTS), []
    )

    fake_clock.advance(5_000)
    restarted = _persistent(store, cache_ttl_ms=1_000)
    operation = ScriptedOperation(RuntimeError("World Bank down"))

    assert await restarted.execute(operation, []) == _POINTS
    assert operation.calls == 1
    assert restarted.status().data_mode == DataMode.STALE


async def test_store_read_and_write_failures_are_swallowed(
    fake_clock: FakeClock,
) -> None:
    breaker = _persistent(BrokenCacheStore())

    assert await breaker.execute(ScriptedOperation(_POINTS), []) == _POINTS
    assert breaker.hydrated is True
    assert breaker.get_cached() == _POINTS

    await breaker.clear_cache()
    assert breaker.get_cached() is None


async def test_undecodable_payload_is_ignored(fake_clock: FakeClock) -> None:
    store = InMemoryCacheStore()
    await store.set("Progress Data", b"{not json")
    breaker = _persistent(store)

    assert await breaker.execute(ScriptedOperation(_POINTS), []) == _POINTS
    assert await store.get("Progress Data") != b"{not json"


async def test_success_writes_every_refresh(fake_clock: FakeClock) -> None:
    store = CountingCacheStore()
    breaker = _persistent(store, cache_ttl_ms=0)
    operation = ScriptedOperation(_POINTS, _POINTS[:1])

    await breaker.execute(operation, [])
    await breaker.execute(operation, [])

    assert store.sets == 2
    codec = PydanticCacheCodec(list[ProgressPoint])
    payload = await store.get("Progress Data")
    assert payload is not None
    assert codec.decode("Progress Data", payload).value == _POINTS[:1]


async def test_failure_does_not_touch_persistent_store(fake_clock: FakeClock) -> None:
    store = CountingCacheStore()
    breaker = _persistent(store)

    await breaker.execute(ScriptedOperation(RuntimeError("down")), [])

    assert store.sets == 0


async def test_concurrent_first_calls_read_store_once(fake_clock: FakeClock) -> None:
    store = CountingCacheStore()
    codec = PydanticCacheCodec(list[ProgressPoint])
    entry = CacheEntry(value=_POINTS, stored_at_ms=fake_clock.now())
    await store.set("Progress Data", codec.encode(entry))
    breaker = _persistent(store)
    operation = ScriptedOperation(RuntimeError("should not be called"))

    results = await asyncio.gather(*(breaker.execute(operation, []) for _ in range(5)))

    assert results == [_POINTS] * 5
    assert store.gets == 1
    assert operation.calls == 0


async def test_hydrate_keeps_newer_in_memory_entry(fake_clock: FakeClock) -> None:
    store = InMemoryCacheStore()
    codec = PydanticCacheCodec(list[ProgressPoint])
    old = CacheEntry(value=_POINTS[:1], stored_at_ms=fake_clock.now() - 10_000)
    await store.set("Progress Data", codec.encode(old))
    breaker = _persistent(store)
    breaker._entry = CacheEntry(value=_POINTS, stored_at_ms=fake_clock.now())

    await breaker.hydrate()

    assert breaker.get_cached() == _POINTS


async def test_clear_cache_deletes_persisted_entry(fake_clock: FakeClock) -> None:
    store = InMemoryCacheStore()
    breaker = _persistent(store)
    await breaker.execute(ScriptedOperation(_POINTS), [])

    await breaker.clear_cache()

    assert await store.get("Progress Data") is None
    assert breaker.get_cached() is None


async def test_slow_write_never_overwrites_newer_success(
    fake_clock: FakeClock,
) -> None:
    store = StallingFirstWriteStore()
    breaker = _persistent(store, cache_ttl_ms=0)
    operation = ScriptedOperation(_POINTS[:1], _POINTS)

    first = asyncio.create_task(breaker.execute(operation, []))
    await store.stalled.wait()
    fake_clock.advance(1_000)
    assert await breaker.execute(operation, []) == _POINTS

    store.release.set()
    assert await first == _POINTS[:1]

    assert store.sets == 2
    restarted = _persistent(store, cache_ttl_ms=0)
    await restarted.hydrate()
    assert restarted.get_cached() == _POINTS
    assert breaker.get_cached() == _POINTS
