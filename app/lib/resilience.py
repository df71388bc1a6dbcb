from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
import logging
from typing import TypeVar

import httpx

from app.domain.errors import DomainDependencyError, DomainError, OperationTimeoutError

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]
RetryPredicate = Callable[[BaseException], bool]

logger = logging.getLogger("runtime")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int | None = None


RETRY_POLICIES: Mapping[str, RetryPolicy] = {
    "database": RetryPolicy(max_attempts=5, initial_delay_ms=500),
    "api": RetryPolicy(max_attempts=3, initial_delay_ms=1000),
    "email": RetryPolicy(max_attempts=2, initial_delay_ms=2000),
    "notification": RetryPolicy(max_attempts=5, initial_delay_ms=2000),
    "media_download": RetryPolicy(max_attempts=3, initial_delay_ms=1000),
    "queue_write": RetryPolicy(max_attempts=3, initial_delay_ms=500),
}

# Deadlines in milliseconds.
TIMEOUTS: Mapping[str, int] = {
    "database_query": 10_000,
    "database_write": 15_000,
    "api_request": 30_000,
    "email_send": 20_000,
    "lyrics_generation": 60_000,
    "audio_generation": 120_000,
    "media_download": 30_000,
    "webhook_processing": 45_000,
}

# Deadlock, too many connections, cannot connect now, connection failures,
# statement timeout.
RETRYABLE_STORAGE_CODES = frozenset({"40P01", "53300", "57P03", "08006", "08003", "08001", "57014"})
# Codes set on DomainDependencyError by outbound clients.
RETRYABLE_DEPENDENCY_CODES = frozenset({"timeout", "transport_error"})
RETRYABLE_MESSAGE_MARKERS = ("timeout", "network", "connection", "econnreset", "etimedout")


def backoff_delay_ms(
    attempt: int,
    *,
    initial_delay_ms: int,
    multiplier: float = 2.0,
    max_delay_ms: int | None = None,
) -> int:
    """Delay before the attempt following ``attempt`` (1-based)."""
    delay = int(initial_delay_ms * multiplier ** max(attempt - 1, 0))
    if max_delay_ms is not None:
        return min(delay, max_delay_ms)
    return delay


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (OperationTimeoutError, TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, ConnectionError):
        return True
    if isinstance(exc, DomainDependencyError):
        if exc.status_code is not None and (exc.status_code == 429 or exc.status_code >= 500):
            return True
        if exc.code in RETRYABLE_STORAGE_CODES or exc.code in RETRYABLE_DEPENDENCY_CODES:
            return True
    elif isinstance(exc, DomainError):
        return False

    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in RETRYABLE_STORAGE_CODES:
        return True

    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


async def with_timeout(operation: Operation[T], timeout_ms: int, *, operation_name: str = "operation") -> T:
    """Await ``operation()`` under a deadline; the pending call is cancelled on expiry."""
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
    except TimeoutError as exc:
        raise OperationTimeoutError(operation_name, timeout_ms) from exc


async def with_retry(
    operation: Operation[T],
    policy: RetryPolicy,
    *,
    operation_name: str = "operation",
    retryable: RetryPredicate = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not retryable(exc):
                raise
            delay_ms = backoff_delay_ms(
                attempt,
                initial_delay_ms=policy.initial_delay_ms,
                multiplier=policy.backoff_multiplier,
                max_delay_ms=policy.max_delay_ms,
            )
            logger.warning(
                "retrying operation",
                extra={
                    "component": operation_name,
                    "attempt": attempt,
                    "delay_ms": delay_ms,
                    "error": str(exc),
                },
            )
            await sleep(delay_ms / 1000)
            attempt += 1


async def call_external(
    operation: Operation[T],
    *,
    policy: RetryPolicy,
    timeout_ms: int,
    operation_name: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Deadline per attempt, bounded retries across attempts."""

    async def _attempt() -> T:
        return await with_timeout(operation, timeout_ms, operation_name=operation_name)

    return await with_retry(_attempt, policy, operation_name=operation_name, sleep=sleep)
