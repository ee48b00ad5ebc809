"""Circuit breaker with a last-good-value cache for flaky upstream feeds.

Every dashboard data source wraps its upstream call in a named
``GuardedFetch`` breaker obtained from an application-owned
``BreakerRegistry``.

Key behavior notes:
  - A fresh cache entry always satisfies a call, whatever the circuit state.
  - ``execute`` never raises for upstream failures. It falls back to the stale
    cache, then to the caller's static fallback.
  - Concurrent callers share one upstream call (single-flight). While
    ``HALF_OPEN``, that shared call is the probe.
  - Only consecutive operation failures open the circuit; TTL expiry alone
    never does.
  - Persistent breakers read their store once before the first upstream call
    and write it after every success. Store errors are logged and ignored.
"""

from worldmonitor_core.guarded_fetch.breaker import (
    BreakerConfig,
    GuardedFetch,
    Operation,
)
from worldmonitor_core.guarded_fetch.codec import CacheCodec, PydanticCacheCodec
from worldmonitor_core.guarded_fetch.exceptions import (
    CacheDecodeError,
    CallAbandonedError,
    GuardedFetchError,
)
from worldmonitor_core.guarded_fetch.inflight import InFlightCall
from worldmonitor_core.guarded_fetch.metrics import BreakerListener
from worldmonitor_core.guarded_fetch.registry import BreakerRegistry
from worldmonitor_core.guarded_fetch.state import (
    BreakerState,
    BreakerStatus,
    CacheEntry,
    DataMode,
)
from worldmonitor_core.guarded_fetch.storage import (
    AbstractCacheStore,
    FileCacheStore,
    InMemoryCacheStore,
    RedisCacheStore,
    build_cache_store,
)

__all__ = [
    "AbstractCacheStore",
    "BreakerConfig",
    "BreakerListener",
    "BreakerRegistry",
    "BreakerState",
    "BreakerStatus",
    "CacheCodec",
    "CacheDecodeError",
    "CacheEntry",
    "CallAbandonedError",
    "DataMode",
    "FileCacheStore",
    "GuardedFetch",
    "GuardedFetchError",
    "InFlightCall",
    "InMemoryCacheStore",
    "Operation",
    "PydanticCacheCodec",
    "RedisCacheStore",
    "build_cache_store",
]
