"""Named breaker registry owned by the application."""

import asyncio
import threading
from collections.abc import Sequence
from types import TracebackType
from typing import Any

from worldmonitor_core.guarded_fetch.breaker import BreakerConfig, GuardedFetch
from worldmonitor_core.guarded_fetch.codec import CacheCodec
from worldmonitor_core.guarded_fetch.metrics import BreakerListener
from worldmonitor_core.guarded_fetch.state import BreakerStatus
from worldmonitor_core.guarded_fetch.storage import (
    AbstractCacheStore,
    build_cache_store,
)
from worldmonitor_core.logging import get_logger, log_info, log_warning
from worldmonitor_core.settings import GuardedFetchSettings

_logger = get_logger(__name__)


class BreakerRegistry:
    """Get-or-create mapping from breaker name to ``GuardedFetch``.

    Two call sites asking for the same name share one breaker, its state and
    its cache. The first registration's configuration wins; later conflicting
    configurations are logged and ignored. Breakers are never removed while
    the registry lives.
    """

    def __init__(
        self,
        *,
        settings: GuardedFetchSettings | None = None,
        store: AbstractCacheStore | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        configure_logging: bool = False,
    ) -> None:
        """Create an empty registry.

        Args:
            settings: Defaults for new breakers and persistent store wiring.
                Defaults to ``GuardedFetchSettings()`` read from the
                environment.
            store: Persistent cache store shared by all persistent breakers.
                A store passed in stays owned by the caller and is not closed
                by ``close``. Defaults to a store built from ``settings``,
                which the registry owns and closes.
            listeners: Listener hooks attached to every breaker created here.
            configure_logging: Install structlog from ``settings.log_level``
                and ``settings.log_format`` before anything is logged.
        """
        self.settings = GuardedFetchSettings() if settings is None else settings
        if configure_logging:
            self.settings.configure_logging()
        self._owns_store = store is None
        self.store = build_cache_store(self.settings) if store is None else store
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._breakers: dict[str, GuardedFetch[Any]] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        config: BreakerConfig,
        *,
        codec: CacheCodec[Any] | None = None,
    ) -> GuardedFetch[Any]:
        """Return the breaker registered as ``config.name``, creating it once."""
        with self._lock:
            breaker = self._breakers.get(config.name)
            if breaker is None:
                breaker = GuardedFetch(
                    config,
                    store=self.store,
                    codec=codec,
                    listeners=self._listeners,
                )
                self._breakers[config.name] = breaker
                created = True
            else:
                created = False

        if created:
            log_info(
                _logger,
                "guarded_fetch.breaker_created",
                breaker=config.name,
                cache_ttl_ms=config.cache_ttl_ms,
                persist_cache=config.persist_cache,
                failure_threshold=config.failure_threshold,
                open_duration_ms=config.open_duration_ms,
            )
        elif breaker.config != config:
            log_warning(
                _logger,
                "guarded_fetch.config_ignored",
                breaker=config.name,
                reason="breaker already registered with a different config",
            )
        return breaker

    def create_breaker(
        self,
        name: str,
        *,
        cache_ttl_ms: float | None = None,
        persist_cache: bool | None = None,
        failure_threshold: int | None = None,
        open_duration_ms: float | None = None,
        codec: CacheCodec[Any] | None = None,
    ) -> GuardedFetch[Any]:
        """Build a config from explicit values plus settings defaults.

        Args:
            name: Unique breaker name.
            cache_ttl_ms: Freshness window. Defaults to
                ``settings.default_cache_ttl_ms``.
            persist_cache: Mirror results to the persistent store. Defaults to
                ``settings.default_persist_cache``.
            failure_threshold: Consecutive failures before opening. Defaults
                to ``settings.default_failure_threshold``.
            open_duration_ms: Open period before a probe. Defaults to
                ``settings.default_open_duration_ms``.
            codec: Persisted entry serializer, required when persisting.

        Returns:
            The registered breaker for ``name``.
        """
        settings = self.settings
        config = BreakerConfig(
            name=name,
            cache_ttl_ms=(
                settings.default_cache_ttl_ms if cache_ttl_ms is None else cache_ttl_ms
            ),
            persist_cache=(
                settings.default_persist_cache
                if persist_cache is None
                else persist_cache
            ),
            failure_threshold=(
                settings.default_failure_threshold
                if failure_threshold is None
                else failure_threshold
            ),
            open_duration_ms=(
                settings.default_open_duration_ms
                if open_duration_ms is None
                else open_duration_ms
            ),
        )
        return self.get_or_create(config, codec=codec)

    def get(self, name: str) -> GuardedFetch[Any] | None:
        with self._lock:
            return self._breakers.get(name)

    def names(self) -> list[str]:
        """Return registered names in registration order."""
        with self._lock:
            return list(self._breakers)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)

    def _require(self, name: str) -> GuardedFetch[Any]:
        breaker = self.get(name)
        if breaker is None:
            raise KeyError(f"unknown breaker: {name}")
        return breaker

    def get_status(self, name: str) -> str:
        """Return the human-readable summary for one breaker.

        Raises:
            KeyError: If no breaker is registered under ``name``.
        """
        return self._require(name).get_status()

    def status_report(self) -> dict[str, BreakerStatus]:
        """Return a status snapshot for every registered breaker."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.status() for breaker in breakers}

    def is_open(self, name: str) -> bool:
        return self._require(name).is_open()

    def retry_in_ms(self, name: str) -> float:
        return self._require(name).retry_in_ms()

    async def start(self) -> None:
        """Warm-start every persistent breaker from the persistent store."""
        with self._lock:
            pending = [
                breaker
                for breaker in self._breakers.values()
                if breaker.config.persist_cache and not breaker.hydrated
            ]
        await asyncio.gather(*(breaker.hydrate() for breaker in pending))

    async def close(self) -> None:
        """Release the persistent store if this registry built it."""
        if self._owns_store:
            await self.store.close()

    async def __aenter__(self) -> "BreakerRegistry":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
