from __future__ import annotations

import pytest

import worldmonitor_core.guarded_fetch.breaker as breaker_mod
from tests.worldmonitor_core.support.fakes import FakeClock
from worldmonitor_core.settings import GuardedFetchSettings


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drive breaker time from a manually advanced clock."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_now_ms", clock.now)
    return clock


@pytest.fixture
def settings() -> GuardedFetchSettings:
    """Provide in-memory settings independent of the process environment."""
    return GuardedFetchSettings(
        default_cache_ttl_ms=1_000,
        default_persist_cache=False,
        default_failure_threshold=3,
        default_open_duration_ms=30_000,
        cache_store="memory",
        cache_dir=None,
        redis_url=None,
    )
