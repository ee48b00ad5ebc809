"""Guarded fetch exceptions.

None of these escape ``GuardedFetch.execute``; they are raised by lower
level pieces (in-flight handles, codecs) and absorbed by the breaker.
"""


class GuardedFetchError(Exception):
    """Base exception for the guarded fetch package."""


class CallAbandonedError(GuardedFetchError):
    """Raised to attached callers when the in-flight leader was cancelled.

    Attributes:
        breaker_name: Name of the breaker whose call was abandoned.
    """

    def __init__(self, breaker_name: str) -> None:
        self.breaker_name = breaker_name
        super().__init__(f"call_abandoned: {breaker_name}")


class CacheDecodeError(GuardedFetchError):
    """Raised when a persisted cache payload cannot be decoded.

    Attributes:
        key: Persistent cache key of the payload.
    """

    def __init__(self, key: str, reason: str) -> None:
        """Initialize a decode failure payload.

        Args:
            key: Persistent cache key the payload was read from.
            reason: Short description of the decoding problem.
        """
        self.key = key
        super().__init__(f"cache_decode_failed: {key}: {reason}")
