"""Shared error types for worldmonitor_core."""


class TransientError(RuntimeError):
    """Generic retry-safe transient upstream failure."""


class OperationTimeoutError(TransientError, TimeoutError):
    """Raised when a guarded operation does not settle within its deadline."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"operation_timeout_seconds={timeout_seconds:g}")
