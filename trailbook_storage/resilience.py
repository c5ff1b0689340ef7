"""Retry with exponential backoff for remote storage calls.

Shields the normal data path and the migration pipeline from transient
network failures (timeouts, DNS, TLS, throttling) without masking
permanent ones (validation, permission, not-found, malformed data).
"""

from __future__ import annotations

import asyncio
import logging
import random
import socket
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .exceptions import (
    PERMANENT_ERRORS,
    StorageConnectionError,
    TransientStorageError,
    ValidationError,
)
from .result import Error, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]

# Lower-cased substrings that mark an error message as transient.
TRANSIENT_KEYWORDS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "unavailable",
    "deadline",
    "network",
    "connection",
    "temporary",
    "throttled",
    "rate limit",
    "rate-limit",
    "503",  # Service Unavailable
    "504",  # Gateway Timeout
    "429",  # Too Many Requests
)

# I/O timeout, DNS failure, TLS failure and dropped connections.
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    socket.gaierror,
    ssl.SSLError,
    ConnectionError,
    TransientStorageError,
    StorageConnectionError,
)

# Request timeout, throttling (449 is Cosmos "retry with"), and server-side
# failures the services document as safe to retry. The Cosmos and Blob
# adapters translate exactly these codes into TransientStorageError.
RETRYABLE_STATUS_CODES: tuple[int, ...] = (408, 429, 449, 500, 502, 503, 504)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    ``max_retries`` is the total number of attempts. Delays are in seconds:
    attempt ``n`` (0-based) waits ``min(initial_delay * backoff_factor**n, max_delay)``
    before the next attempt, jittered by +/- ``jitter_factor``.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter_factor: float = 0.1
    retryable_exceptions: tuple[type[BaseException], ...] = TRANSIENT_EXCEPTIONS
    retryable_keywords: tuple[str, ...] = TRANSIENT_KEYWORDS
    retryable_status_codes: tuple[int, ...] = RETRYABLE_STATUS_CODES
    retryable_predicate: Callable[[Exception], bool] | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValidationError("max_retries", "must be at least 1", str(self.max_retries))
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValidationError("delay", "delays must not be negative")
        if self.backoff_factor < 1.0:
            raise ValidationError(
                "backoff_factor", "must be at least 1.0", str(self.backoff_factor)
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValidationError(
                "jitter_factor", "must be between 0.0 and 1.0", str(self.jitter_factor)
            )

    @classmethod
    def default(cls) -> RetryPolicy:
        """Policy for ordinary remote reads and writes."""
        return cls()

    @classmethod
    def aggressive(cls) -> RetryPolicy:
        """Policy for critical writes such as migration."""
        return cls(max_retries=5, initial_delay=0.5, max_delay=30.0, backoff_factor=2.5)

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay after the given 0-based attempt."""
        return min(self.initial_delay * (self.backoff_factor**attempt), self.max_delay)

    def delay_for(self, attempt: int) -> float:
        """Jittered delay after the given 0-based attempt."""
        return jittered_delay(self.base_delay(attempt), self.jitter_factor)

    def is_retryable(self, exc: Exception) -> bool:
        """Classify an exception as transient (worth retrying) or permanent."""
        if isinstance(exc, PERMANENT_ERRORS):
            return False

        # Already classified by a storage adapter
        if isinstance(exc, (TransientStorageError, StorageConnectionError)):
            return True

        status_code = _extract_status_code(exc)
        if status_code is not None:
            # A known HTTP status is authoritative over message keywords
            return status_code in self.retryable_status_codes

        if isinstance(exc, self.retryable_exceptions):
            return True

        message = str(exc).lower()
        if any(keyword in message for keyword in self.retryable_keywords):
            return True

        if self.retryable_predicate is not None:
            return self.retryable_predicate(exc)
        return False


DEFAULT_RETRY_POLICY = RetryPolicy.default()
AGGRESSIVE_RETRY_POLICY = RetryPolicy.aggressive()


def jittered_delay(base_delay: float, jitter_factor: float = 0.1) -> float:
    """Spread ``base_delay`` by +/- ``jitter_factor`` so concurrent callers do not retry in lockstep."""
    if jitter_factor <= 0 or base_delay <= 0:
        return max(base_delay, 0.0)
    jitter = (random.random() * 2 - 1) * base_delay * jitter_factor
    return max(base_delay + jitter, 0.0)


def _extract_status_code(exc: Exception) -> int | None:
    """Try to extract an HTTP status code from common SDK exceptions."""
    # Azure SDK: HttpResponseError / CosmosHttpResponseError, and our TransientStorageError
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(code, int):
            return code
    return None


def _get_retry_after(exc: Exception) -> float | None:
    """Extract Retry-After header value from an exception if present."""
    response = getattr(exc, "response", None)
    if response is None:
        return None
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    retry_after = headers.get("Retry-After") or headers.get("retry-after")
    if retry_after is None:
        return None
    try:
        return float(retry_after)
    except (ValueError, TypeError):
        return None


async def retry_with_backoff(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy | None = None,
    operation: str = "operation",
    sleep: Sleep = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Execute an async function with retry and exponential backoff.

    Args:
        fn: Async callable to execute
        *args: Positional args for fn
        policy: Retry policy (uses DEFAULT_RETRY_POLICY if None)
        operation: Name of the operation for log messages
        sleep: Awaitable sleep function (injectable for tests)
        **kwargs: Keyword args for fn

    Returns:
        Result of fn

    Raises:
        Exception: The first non-retryable exception, or the last
            exception once all attempts are exhausted
    """
    cfg = policy or DEFAULT_RETRY_POLICY

    for attempt in range(cfg.max_retries):
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            if not cfg.is_retryable(exc):
                logger.warning(
                    "NON_RETRYABLE: %s failed with %s: %s",
                    operation,
                    type(exc).__name__,
                    exc,
                )
                raise

            if attempt >= cfg.max_retries - 1:
                logger.error(
                    "RETRY_EXHAUSTED: %s failed after %d attempts: %s",
                    operation,
                    cfg.max_retries,
                    exc,
                )
                raise

            retry_after = _get_retry_after(exc)
            if retry_after is not None:
                delay = min(retry_after, cfg.max_delay)
            else:
                delay = cfg.delay_for(attempt)

            if _extract_status_code(exc) == 429:
                logger.warning(
                    "THROTTLED: %s got 429 Too Many Requests, attempt=%d/%d, retry_after=%.2fs",
                    operation,
                    attempt + 1,
                    cfg.max_retries,
                    delay,
                )
            else:
                logger.warning(
                    "RETRYING: %s attempt=%d/%d delay=%.2fs: %s - %s",
                    operation,
                    attempt + 1,
                    cfg.max_retries,
                    delay,
                    type(exc).__name__,
                    exc,
                )
            await sleep(delay)
        else:
            if attempt > 0:
                logger.info(
                    "RETRY_RECOVERED: %s succeeded on attempt %d/%d",
                    operation,
                    attempt + 1,
                    cfg.max_retries,
                )
            return result

    # Unreachable, but satisfies type checker
    raise RuntimeError(f"{operation} exhausted retries without raising")  # pragma: no cover


async def retry_result(
    fn: Callable[..., Awaitable[Result[T]]],
    *args: Any,
    policy: RetryPolicy | None = None,
    operation: str = "operation",
    sleep: Sleep = asyncio.sleep,
    **kwargs: Any,
) -> Result[T]:
    """Retry a ``Result``-returning operation without raising.

    ``Error`` results drive the retry loop; ``Loading`` passes through
    untouched and is never retried.
    """

    async def attempt() -> Result[T]:
        result = await fn(*args, **kwargs)
        match result:
            case Error(cause=cause):
                raise cause
            case _:
                return result

    try:
        return await retry_with_backoff(attempt, policy=policy, operation=operation, sleep=sleep)
    except Exception as e:
        return Error(e, str(e) or f"{operation} failed after retries")


__all__ = [
    "AGGRESSIVE_RETRY_POLICY",
    "DEFAULT_RETRY_POLICY",
    "RETRYABLE_STATUS_CODES",
    "TRANSIENT_EXCEPTIONS",
    "TRANSIENT_KEYWORDS",
    "RetryPolicy",
    "jittered_delay",
    "retry_result",
    "retry_with_backoff",
]
