"""Single-flight handle shared by concurrent callers of one breaker."""

import asyncio
import threading
from concurrent.futures import Future
from typing import Generic, TypeVar

from worldmonitor_core.guarded_fetch.exceptions import CallAbandonedError

T = TypeVar("T")


class InFlightCall(Generic[T]):
    """Pending outcome of one upstream call that other callers attach to.

    The outcome lives in a ``concurrent.futures.Future`` so callers running on
    different threads, each with its own event loop, can await the same call.
    The leader settles the handle exactly once with ``succeed``, ``fail`` or
    ``abandon``; attached callers receive that outcome.
    """

    def __init__(self, breaker_name: str, issued_at_ms: float) -> None:
        """Create an unsettled handle.

        Args:
            breaker_name: Owning breaker, used in abandonment errors.
            issued_at_ms: Wall-clock time the upstream call was issued.
        """
        self.breaker_name = breaker_name
        self.issued_at_ms = issued_at_ms
        self._future: Future[T] = Future()
        self._attached = 0
        self._attached_lock = threading.Lock()

    @property
    def attached(self) -> int:
        """Number of callers currently waiting on this call."""
        with self._attached_lock:
            return self._attached

    def done(self) -> bool:
        return self._future.done()

    async def attach(self) -> T:
        """Wait for the shared outcome.

        Cancelling one attached caller detaches only that caller; the shared
        call and the other attached callers are unaffected.
        """
        with self._attached_lock:
            self._attached += 1
        try:
            return await asyncio.shield(asyncio.wrap_future(self._future))
        finally:
            with self._attached_lock:
                self._attached -= 1

    def succeed(self, value: T) -> None:
        self._future.set_result(value)

    def fail(self, exc: BaseException) -> None:
        self._future.set_exception(exc)

    def abandon(self) -> None:
        """Settle attached callers after the leader was cancelled."""
        self._future.set_exception(CallAbandonedError(self.breaker_name))
