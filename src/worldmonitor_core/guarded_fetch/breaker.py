"""Core guarded fetch breaker implementation."""

import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from typing import Generic, TypeVar

from worldmonitor_core.guarded_fetch.codec import CacheCodec
from worldmonitor_core.guarded_fetch.exceptions import CallAbandonedError
from worldmonitor_core.guarded_fetch.inflight import InFlightCall
from worldmonitor_core.guarded_fetch.metrics import BreakerListener
from worldmonitor_core.guarded_fetch.state import (
    BreakerState,
    BreakerStatus,
    CacheEntry,
    DataMode,
)
from worldmonitor_core.guarded_fetch.storage import (
    AbstractCacheStore,
    InMemoryCacheStore,
)
from worldmonitor_core.logging import get_logger, log_info, log_warning
from worldmonitor_core.settings import (
    DEFAULT_CACHE_TTL_MS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_OPEN_DURATION_MS,
)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
_Transition = tuple[BreakerState, BreakerState]

_logger = get_logger(__name__)


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True, slots=True)
class BreakerConfig:
    """Per-breaker configuration, fixed for the breaker's lifetime.

    Attributes:
        name: Registry key; also the persistent cache key.
        cache_ttl_ms: How long a cached value counts as fresh.
        persist_cache: Mirror successful results to the persistent store.
        failure_threshold: Consecutive failures that open the circuit.
        open_duration_ms: How long the circuit stays open before a probe.
    """

    name: str
    cache_ttl_ms: float = DEFAULT_CACHE_TTL_MS
    persist_cache: bool = False
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    open_duration_ms: float = DEFAULT_OPEN_DURATION_MS

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("name must be non-empty")
        if self.cache_ttl_ms < 0:
            raise ValueError("cache_ttl_ms must be >= 0")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.open_duration_ms <= 0:
            raise ValueError("open_duration_ms must be > 0")


class GuardedFetch(Generic[T]):
    """Circuit breaker with a last-good-value cache around one upstream source.

    ``execute`` never raises for upstream failures: it returns the fresh cache,
    a live result, the stale cache or the caller's fallback, in that order of
    preference. Concurrent callers share one upstream call.

    Bookkeeping happens under a per-breaker ``threading.Lock`` that is never
    held across an ``await``.
    """

    def __init__(
        self,
        config: BreakerConfig,
        *,
        store: AbstractCacheStore | None = None,
        codec: CacheCodec[T] | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a breaker with optional persistence and listeners.

        Args:
            config: Breaker configuration.
            store: Persistent cache store, used only when
                ``config.persist_cache`` is set. Defaults to in-memory storage.
            codec: Serializer for persisted entries. Required when
                ``config.persist_cache`` is set.
            listeners: Optional listener hooks for breaker events.

        Raises:
            ValueError: If persistence is requested without a codec.
        """
        if config.persist_cache and codec is None:
            raise ValueError("persist_cache requires a codec")
        self.config = config
        self.name = config.name
        self._codec = codec
        self._store: AbstractCacheStore | None = None
        if config.persist_cache:
            self._store = InMemoryCacheStore() if store is None else store
        self._listeners = tuple(listeners) if listeners is not None else ()

        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._opened_at_ms: float | None = None
        self._entry: CacheEntry[T] | None = None
        self._inflight: InFlightCall[T] | None = None
        self._data_mode = DataMode.NONE
        self._hydrated = not config.persist_cache
        self._hydration: InFlightCall[None] | None = None
        self._pending_write: CacheEntry[T] | None = None
        self._writing = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def hydrated(self) -> bool:
        """Whether the persistent tier has been read for this breaker."""
        return self._hydrated

    async def execute(self, operation: Operation[T], fallback: T) -> T:
        """Return the best available value for this breaker's data source.

        Args:
            operation: Zero-argument async callable fetching a fresh value.
            fallback: Last-resort value when no cache of any age exists.

        Returns:
            Fresh cache, a live result, stale cache or ``fallback``.
        """
        await self.hydrate()

        now = _now_ms()
        transitions: list[_Transition] = []
        inflight: InFlightCall[T] | None
        degraded = fallback
        mode = DataMode.NONE
        retry_in_ms = 0.0
        with self._lock:
            entry = self._entry
            if entry is not None and entry.is_fresh(now, self.config.cache_ttl_ms):
                self._data_mode = DataMode.CACHED
                return entry.value

            inflight = self._inflight
            leader = False
            if inflight is None and self._admit(now, transitions):
                inflight = InFlightCall(self.name, now)
                self._inflight = inflight
                leader = True
            elif inflight is None:
                degraded = self._serve_degraded(fallback, now)
                mode = self._data_mode
                retry_in_ms = self._retry_in_ms(now)

        await self._emit_transitions(transitions)

        if inflight is None:
            log_info(
                _logger,
                "guarded_fetch.served_degraded",
                breaker=self.name,
                served=mode.value,
                retry_in_ms=round(retry_in_ms),
            )
            await self._emit_call_rejected()
            return degraded
        if leader:
            return await self._lead(inflight, operation, fallback)
        return await self._follow(inflight, fallback)

    async def _lead(
        self,
        inflight: InFlightCall[T],
        operation: Operation[T],
        fallback: T,
    ) -> T:
        transitions: list[_Transition] = []
        start = time.monotonic()
        try:
            value = await operation()
        except Exception as exc:
            elapsed = max(time.monotonic() - start, 0.0)
            now = _now_ms()
            with self._lock:
                self._inflight = None
                self._record_failure(now, transitions)
                degraded = self._serve_degraded(fallback, now)
                failure_count = self._failure_count
            inflight.fail(exc)

            log_warning(
                _logger,
                "guarded_fetch.call_failed",
                breaker=self.name,
                error_type=exc.__class__.__name__,
                error=str(exc),
                failure_count=failure_count,
                elapsed=round(elapsed, 3),
            )
            await self._emit_call_failed(exc, elapsed)
            await self._emit_transitions(transitions)
            return degraded
        except BaseException:
            with self._lock:
                self._inflight = None
            inflight.abandon()
            raise

        elapsed = max(time.monotonic() - start, 0.0)
        entry = CacheEntry(value=value, stored_at_ms=inflight.issued_at_ms)
        with self._lock:
            self._inflight = None
            self._record_success(entry, transitions)
            if self._store is not None:
                self._pending_write = entry
        inflight.succeed(value)

        await self._emit_transitions(transitions)
        await self._emit_call_succeeded(elapsed)
        await self._flush_persisted()
        return value

    async def _follow(self, inflight: InFlightCall[T], fallback: T) -> T:
        try:
            return await inflight.attach()
        except Exception:
            with self._lock:
                return self._serve_degraded(fallback, _now_ms())

    def _admit(self, now: float, transitions: list[_Transition]) -> bool:
        if self._state != BreakerState.OPEN:
            return True
        if self._retry_in_ms(now) > 0:
            return False
        self._set_state(BreakerState.HALF_OPEN, transitions)
        return True

    def _record_success(
        self, entry: CacheEntry[T], transitions: list[_Transition]
    ) -> None:
        self._entry = entry
        self._failure_count = 0
        self._opened_at_ms = None
        self._data_mode = DataMode.LIVE
        if self._state != BreakerState.CLOSED:
            self._set_state(BreakerState.CLOSED, transitions)

    def _record_failure(self, now: float, transitions: list[_Transition]) -> None:
        self._failure_count += 1
        if self._state == BreakerState.HALF_OPEN or (
            self._state == BreakerState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._opened_at_ms = now
            self._set_state(BreakerState.OPEN, transitions)

    def _serve_degraded(self, fallback: T, now: float) -> T:
        entry = self._entry
        if entry is None:
            self._data_mode = DataMode.FALLBACK
            return fallback
        if entry.is_fresh(now, self.config.cache_ttl_ms):
            self._data_mode = DataMode.CACHED
        else:
            self._data_mode = DataMode.STALE
        return entry.value

    def _set_state(self, new: BreakerState, transitions: list[_Transition]) -> None:
        transitions.append((self._state, new))
        self._state = new

    def _retry_in_ms(self, now: float) -> float:
        if self._state != BreakerState.OPEN or self._opened_at_ms is None:
            return 0.0
        elapsed = now - self._opened_at_ms
        return max(self.config.open_duration_ms - elapsed, 0.0)

    def status(self) -> BreakerStatus:
        """Return a diagnostic snapshot without changing breaker state."""
        now = _now_ms()
        with self._lock:
            entry = self._entry
            return BreakerStatus(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                cache_age_ms=None if entry is None else entry.age_ms(now),
                cache_fresh=(
                    entry is not None
                    and entry.is_fresh(now, self.config.cache_ttl_ms)
                ),
                opened_at_ms=self._opened_at_ms,
                retry_in_ms=self._retry_in_ms(now),
                data_mode=self._data_mode,
                in_flight=self._inflight is not None,
            )

    def get_status(self) -> str:
        """Return a human-readable state summary."""
        return self.status().describe()

    def get_cached(self) -> T | None:
        """Return the cached value regardless of age, or ``None``."""
        with self._lock:
            return None if self._entry is None else self._entry.value

    def is_open(self) -> bool:
        """Return whether calls are currently refused without a probe."""
        with self._lock:
            return self._retry_in_ms(_now_ms()) > 0

    def retry_in_ms(self) -> float:
        """Milliseconds until an open circuit admits its next probe."""
        with self._lock:
            return self._retry_in_ms(_now_ms())

    async def clear_cache(self) -> None:
        """Drop the in-memory entry and the persisted one, if any."""
        with self._lock:
            self._entry = None
            self._pending_write = None
        if self._store is None:
            return
        try:
            await self._store.delete(self.name)
        except Exception:
            log_warning(
                _logger,
                "guarded_fetch.store_delete_failed",
                breaker=self.name,
                exc_info=True,
            )

    async def hydrate(self) -> None:
        """Seed the in-memory cache from the persistent store, once.

        Concurrent callers share one store read. A persisted entry never
        replaces a newer in-memory one.
        """
        if self._hydrated:
            return

        with self._lock:
            if self._hydrated:
                return
            pending = self._hydration
            leader = pending is None
            if pending is None:
                pending = InFlightCall(self.name, _now_ms())
                self._hydration = pending

        if not leader:
            with suppress(CallAbandonedError):
                await pending.attach()
            return

        try:
            entry = await self._read_persisted()
        except BaseException:
            with self._lock:
                self._hydration = None
            pending.abandon()
            raise

        with self._lock:
            current = self._entry
            if entry is not None and (
                current is None or entry.stored_at_ms > current.stored_at_ms
            ):
                self._entry = entry
            self._hydrated = True
            self._hydration = None
        pending.succeed(None)

        if entry is not None:
            log_info(
                _logger,
                "guarded_fetch.cache_hydrated",
                breaker=self.name,
                cache_age_ms=round(entry.age_ms(_now_ms())),
            )

    async def _read_persisted(self) -> CacheEntry[T] | None:
        if self._store is None or self._codec is None:
            return None
        try:
            payload = await self._store.get(self.name)
        except Exception:
            log_warning(
                _logger,
                "guarded_fetch.store_read_failed",
                breaker=self.name,
                exc_info=True,
            )
            return None
        if payload is None:
            return None
        try:
            return self._codec.decode(self.name, payload)
        except Exception as exc:
            log_warning(
                _logger,
                "guarded_fetch.store_decode_failed",
                breaker=self.name,
                error=str(exc),
            )
            return None

    async def _flush_persisted(self) -> None:
        """Write the newest pending entry, one writer per breaker at a time.

        A caller that finds a write already running leaves its entry pending;
        the running writer picks it up after its current write lands, so the
        store always ends with the most recent success.
        """
        with self._lock:
            if self._writing:
                return
            self._writing = True
        try:
            while True:
                with self._lock:
                    entry = self._pending_write
                    self._pending_write = None
                    if entry is None:
                        self._writing = False
                        return
                await self._write_persisted(entry)
        except BaseException:
            with self._lock:
                self._writing = False
            raise

    async def _write_persisted(self, entry: CacheEntry[T]) -> None:
        if self._store is None or self._codec is None:
            return
        try:
            await self._store.set(self.name, self._codec.encode(entry))
        except Exception:
            log_warning(
                _logger,
                "guarded_fetch.store_write_failed",
                breaker=self.name,
                exc_info=True,
            )

    async def _emit_transitions(self, transitions: list[_Transition]) -> None:
        for old, new in transitions:
            log_info(
                _logger,
                "guarded_fetch.state_changed",
                breaker=self.name,
                old=old.value,
                new=new.value,
            )
            for listener in self._listeners:
                try:
                    await listener.on_state_change(self.name, old, new)
                except Exception:
                    continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue
