"""Observability hooks for guarded fetch breakers."""

from typing import Protocol

from worldmonitor_core.guarded_fetch.state import BreakerState


class BreakerListener(Protocol):
    """Listener protocol for breaker events.

    Notes:
        Events are emitted after the breaker's bookkeeping lock is released.
        Exceptions raised by listeners are swallowed.
    """

    async def on_state_change(
        self, name: str, old: BreakerState, new: BreakerState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle a call served from cache or fallback while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle a successful upstream operation."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle a failed upstream operation."""
