"""Timeouts and exponential-backoff retries for outbound calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

import httpx

from radar.errors import CallTimeout, TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_HTTP_CODES = {429, 500, 502, 503, 504}
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
    TransientIOError,
)
# anthropic SDK errors, matched by name so the SDK stays an optional import here
RETRYABLE_SDK_ERRORS = (
    "RateLimitError",
    "OverloadedError",
    "InternalServerError",
    "APIConnectionError",
    "APITimeoutError",
)


async def with_timeout(awaitable: Awaitable[T], timeout: float | None, label: str) -> T:
    """Await with a time limit, raising CallTimeout when it is exceeded.

    A non-positive or missing timeout waits indefinitely.
    """
    if not timeout or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise CallTimeout(label, timeout) from exc


def _backoff(attempt: int, base_delay: float, max_delay: float, retry_after: str | None = None) -> float:
    if retry_after:
        try:
            return min(float(retry_after), max_delay)
        except ValueError:
            pass
    return min(base_delay * (2**attempt), max_delay)


async def retry_async(
    fn,
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    **kwargs,
):
    """Call an async function with exponential backoff on transient failures.

    Retries on:
    - httpx timeout/connection errors and TransientIOError
    - HTTP 429 (rate limit) and 5xx (server errors), honouring Retry-After
    - anthropic rate limit / overloaded errors
    """
    last_exc: BaseException | None = None
    for attempt in range(max_retries + 1):
        try:
            return await fn(*args, **kwargs)
        except RETRYABLE_EXCEPTIONS as exc:
            last_exc = exc
            if attempt == max_retries:
                break
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning(
                "Retry %d/%d after %s: %s (waiting %.1fs)",
                attempt + 1, max_retries, type(exc).__name__, exc, delay,
            )
            await asyncio.sleep(delay)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code not in RETRYABLE_HTTP_CODES:
                raise
            last_exc = exc
            if attempt == max_retries:
                break
            delay = _backoff(
                attempt, base_delay, max_delay, exc.response.headers.get("retry-after"),
            )
            logger.warning(
                "Retry %d/%d after HTTP %d (waiting %.1fs)",
                attempt + 1, max_retries, exc.response.status_code, delay,
            )
            await asyncio.sleep(delay)
        except Exception as exc:
            exc_name = type(exc).__name__
            if exc_name not in RETRYABLE_SDK_ERRORS:
                raise
            last_exc = exc
            if attempt == max_retries:
                break
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning(
                "Retry %d/%d after %s (waiting %.1fs)",
                attempt + 1, max_retries, exc_name, delay,
            )
            await asyncio.sleep(delay)

    raise last_exc  # type: ignore[misc]
