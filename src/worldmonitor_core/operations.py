"""Helpers for building the upstream operations that breakers wrap.

A breaker trusts its operation to settle in bounded time and leaves retries of
a single attempt to the operation. These helpers give collaborators both
without each data source re-implementing them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import TypeVar

import httpx

from worldmonitor_core.errors import OperationTimeoutError, TransientError
from worldmonitor_core.retry import (
    RetryBackoffPolicy,
    build_exponential_jitter_retrying,
    build_interruptible_sleep,
    retry_if_transient,
)

T = TypeVar("T")

RETRY_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
_MAX_BODY_EXCERPT = 1024


class UpstreamRequestError(RuntimeError):
    """Base exception for upstream HTTP failures."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """Initialize request-error metadata.

        Args:
            message: Human-readable error message.
            http_status: Optional HTTP status observed from upstream.
            response_body: Optional excerpt of the response payload.
        """
        super().__init__(message)
        self.http_status = http_status
        self.response_body = response_body


class UpstreamTransientFailure(UpstreamRequestError, TransientError):
    """Raised for retryable upstream failures."""


def with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout_seconds: float,
) -> Callable[[], Awaitable[T]]:
    """Bound ``operation`` so it can never hold a breaker's in-flight slot forever."""
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0")

    async def _bounded() -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_seconds)
        except TimeoutError as exc:
            if isinstance(exc, OperationTimeoutError):
                raise
            raise OperationTimeoutError(timeout_seconds) from exc

    return _bounded


def _excerpt(response: httpx.Response) -> str:
    return response.text[:_MAX_BODY_EXCERPT]


def http_json_operation(
    client: httpx.AsyncClient,
    url: str,
    *,
    parse: Callable[[object], T],
    params: Mapping[str, str | int | float] | None = None,
    headers: Mapping[str, str] | None = None,
    timeout_seconds: float = 10.0,
    retry_policy: RetryBackoffPolicy | None = None,
    stop_event: asyncio.Event | None = None,
) -> Callable[[], Awaitable[T]]:
    """Build an operation that GETs a JSON document and parses it.

    Args:
        client: Shared async HTTP client.
        url: Upstream endpoint.
        parse: Maps the decoded JSON body to the breaker's value type. Errors
            raised here count as upstream failures.
        params: Optional query parameters.
        headers: Optional request headers.
        timeout_seconds: Per-attempt httpx timeout.
        retry_policy: Retry transient failures with exponential jitter when
            given; a single attempt otherwise.
        stop_event: Cuts retry backoff short on shutdown.

    Returns:
        Zero-argument async callable suitable for ``GuardedFetch.execute``.
    """

    async def _fetch_once() -> T:
        try:
            response = await client.get(
                url,
                params=dict(params) if params is not None else None,
                headers=dict(headers) if headers is not None else None,
                timeout=timeout_seconds,
            )
        except httpx.RequestError as exc:
            raise UpstreamTransientFailure(
                f"{exc.__class__.__name__}: {exc}"
            ) from exc

        status = response.status_code
        if status in RETRY_STATUSES:
            raise UpstreamTransientFailure(
                f"Upstream transient failure (HTTP {status}).",
                http_status=status,
                response_body=_excerpt(response),
            )
        if status >= 400:
            raise UpstreamRequestError(
                f"Upstream returned HTTP {status}.",
                http_status=status,
                response_body=_excerpt(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamRequestError(
                "Upstream response is not valid JSON.",
                http_status=status,
                response_body=_excerpt(response),
            ) from exc
        return parse(payload)

    if retry_policy is None:
        return _fetch_once

    async def _fetch_with_retry() -> T:
        sleep = None if stop_event is None else build_interruptible_sleep(stop_event)
        retrying = build_exponential_jitter_retrying(
            retry=retry_if_transient(),
            policy=retry_policy,
            sleep=sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await _fetch_once()
        raise RuntimeError("Upstream retry loop exited unexpectedly.")

    return _fetch_with_retry
