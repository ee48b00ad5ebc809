from __future__ import annotations

import logging
import sys
from typing import Any, cast

import pytest
import structlog

import worldmonitor_core.guarded_fetch.registry as registry_mod
from tests.worldmonitor_core.support.fakes import (
    FakeClock,
    FakeRedis,
    RecordingListener,
    ScriptedOperation,
)
from worldmonitor_core.guarded_fetch import (
    AbstractCacheStore,
    BreakerRegistry,
    BreakerState,
    InMemoryCacheStore,
    PydanticCacheCodec,
    RedisCacheStore,
)
from worldmonitor_core.settings import GuardedFetchSettings

pytestmark = pytest.mark.asyncio


async def test_status_report_and_cooldown_queries(
    settings: GuardedFetchSettings,
    fake_clock: FakeClock,
) -> None:
    registry = BreakerRegistry(settings=settings)
    quotes = registry.create_breaker("Yahoo Finance", failure_threshold=1)
    quakes = registry.create_breaker("USGS")

    await quotes.execute(ScriptedOperation(RuntimeError("429")), [])
    await quakes.execute(ScriptedOperation(["M5.1"]), [])

    report = registry.status_report()
    assert list(report) == ["Yahoo Finance", "USGS"]
    assert report["Yahoo Finance"].state == BreakerState.OPEN
    assert report["USGS"].state == BreakerState.CLOSED
    assert registry.is_open("Yahoo Finance") is True
    assert registry.retry_in_ms("Yahoo Finance") == 30_000
    assert registry.is_open("USGS") is False
    assert registry.get_status("USGS").startswith("USGS: state=closed")


async def test_listeners_are_attached_to_every_breaker(
    settings: GuardedFetchSettings,
    fake_clock: FakeClock,
) -> None:
    listener = RecordingListener()
    registry = BreakerRegistry(settings=settings, listeners=[listener])

    await registry.create_breaker("a").execute(ScriptedOperation("x"), None)
    await registry.create_breaker("b").execute(ScriptedOperation("y"), None)

    assert listener.events == [("succeeded", "a"), ("succeeded", "b")]


async def test_start_warms_persistent_breakers(
    settings: GuardedFetchSettings,
    fake_clock: FakeClock,
) -> None:
    store = InMemoryCacheStore()
    codec = PydanticCacheCodec(list[str])

    async with BreakerRegistry(settings=settings, store=store) as registry:
        breaker = registry.create_breaker(
            "GPS Jamming", persist_cache=True, codec=codec
        )
        await breaker.execute(ScriptedOperation(["hex-1"]), [])

    restarted = BreakerRegistry(settings=settings, store=store)
    warm = restarted.create_breaker("GPS Jamming", persist_cache=True, codec=codec)
    plain = restarted.create_breaker("Status Pages")
    assert warm.get_cached() is None

    await restarted.start()

    assert warm.hydrated is True
    assert warm.get_cached() == ["hex-1"]
    assert plain.get_cached() is None
    await restarted.close()


async def test_close_leaves_caller_owned_store_open(
    settings: GuardedFetchSettings,
) -> None:
    client = FakeRedis()
    store = RedisCacheStore(cast(Any, client))

    async with BreakerRegistry(settings=settings, store=store) as registry:
        assert registry.store is store

    assert client.closed is False


async def test_close_releases_store_built_from_settings(
    settings: GuardedFetchSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client = FakeRedis()
    built: list[GuardedFetchSettings] = []

    def _build(config: GuardedFetchSettings) -> AbstractCacheStore:
        built.append(config)
        return RedisCacheStore(cast(Any, client))

    monkeypatch.setattr(registry_mod, "build_cache_store", _build)

    async with BreakerRegistry(settings=settings) as registry:
        assert isinstance(registry.store, RedisCacheStore)
        assert client.closed is False

    assert built == [settings]
    assert client.closed is True


async def test_configure_logging_installs_settings_level_and_format(
    settings: GuardedFetchSettings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: True, raising=False)
    verbose = settings.model_copy(update={"log_level": "DEBUG", "log_format": "json"})

    registry = BreakerRegistry(settings=verbose, configure_logging=True)

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    formatter = root.handlers[0].formatter
    assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
    assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)
    await registry.close()
