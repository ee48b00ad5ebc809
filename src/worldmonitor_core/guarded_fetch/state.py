"""Guarded fetch state primitives."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class BreakerState(StrEnum):
    """Circuit state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class DataMode(StrEnum):
    """How the most recent ``execute`` call was satisfied."""

    NONE = "none"
    LIVE = "live"
    CACHED = "cached"
    STALE = "stale"
    FALLBACK = "fallback"


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """Last good value of a breaker and the time its refresh was issued."""

    value: T
    stored_at_ms: float

    def age_ms(self, now_ms: float) -> float:
        return max(now_ms - self.stored_at_ms, 0.0)

    def is_fresh(self, now_ms: float, ttl_ms: float) -> bool:
        return now_ms - self.stored_at_ms < ttl_ms


@dataclass(frozen=True)
class BreakerStatus:
    """Point-in-time view of breaker internals for operator surfaces.

    Attributes:
        name: Breaker name.
        state: Current circuit state.
        failure_count: Consecutive failures since the last success.
        cache_age_ms: Age of the cached value, ``None`` without a cache.
        cache_fresh: Whether the cached value is still inside its TTL.
        opened_at_ms: Wall-clock time the circuit last opened, if open.
        retry_in_ms: Milliseconds until an open circuit admits a probe.
        data_mode: How the most recent call was served.
        in_flight: Whether an upstream call is currently pending.
    """

    name: str
    state: BreakerState
    failure_count: int
    cache_age_ms: float | None
    cache_fresh: bool
    opened_at_ms: float | None
    retry_in_ms: float
    data_mode: DataMode
    in_flight: bool

    def describe(self) -> str:
        """Render a one-line human-readable summary."""
        if self.cache_age_ms is None:
            cache = "none"
        else:
            freshness = "fresh" if self.cache_fresh else "stale"
            cache = f"{freshness} {self.cache_age_ms / 1000:.1f}s"

        parts = [
            f"{self.name}: state={self.state.value}",
            f"failures={self.failure_count}",
            f"cache={cache}",
            f"served={self.data_mode.value}",
        ]
        if self.state == BreakerState.OPEN:
            parts.append(f"retry_in={self.retry_in_ms / 1000:.0f}s")
        if self.in_flight:
            parts.append("in_flight")
        return " ".join(parts)
