from __future__ import annotations

import asyncio

import httpx
import pytest

from app.domain.errors import DomainDependencyError, DomainValidationError, OperationTimeoutError
from app.lib.resilience import (
    RetryPolicy,
    backoff_delay_ms,
    call_external,
    is_retryable,
    with_retry,
    with_timeout,
)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.unit
def test_backoff_doubles_and_respects_cap() -> None:
    assert [backoff_delay_ms(attempt, initial_delay_ms=1000) for attempt in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]
    assert backoff_delay_ms(10, initial_delay_ms=1000, max_delay_ms=300_000) == 300_000
    assert backoff_delay_ms(0, initial_delay_ms=500) == 500


@pytest.mark.unit
def test_with_retry_recovers_from_transient_failures() -> None:
    sleep = _RecordingSleep()
    calls = 0

    async def _flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise DomainDependencyError("upstream busy", status_code=503)
        return "ok"

    result = asyncio.run(with_retry(_flaky, RetryPolicy(max_attempts=3, initial_delay_ms=1000), sleep=sleep))

    assert result == "ok"
    assert calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.unit
def test_with_retry_stops_immediately_on_non_retryable_error() -> None:
    sleep = _RecordingSleep()
    calls = 0

    async def _invalid() -> None:
        nonlocal calls
        calls += 1
        raise DomainValidationError("bad input")

    with pytest.raises(DomainValidationError):
        asyncio.run(with_retry(_invalid, RetryPolicy(max_attempts=5), sleep=sleep))

    assert calls == 1
    assert sleep.delays == []


@pytest.mark.unit
def test_with_retry_reraises_last_error_after_max_attempts() -> None:
    sleep = _RecordingSleep()
    calls = 0

    async def _down() -> None:
        nonlocal calls
        calls += 1
        raise DomainDependencyError(f"connection reset #{calls}", code="transport_error")

    with pytest.raises(DomainDependencyError, match="#3"):
        asyncio.run(with_retry(_down, RetryPolicy(max_attempts=3, initial_delay_ms=10), sleep=sleep))

    assert calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.unit
def test_with_retry_honors_custom_predicate() -> None:
    calls = 0

    async def _fails() -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("anything")

    with pytest.raises(RuntimeError):
        asyncio.run(
            with_retry(
                _fails,
                RetryPolicy(max_attempts=4, initial_delay_ms=1),
                retryable=lambda exc: True,
                sleep=_RecordingSleep(),
            )
        )

    assert calls == 4


@pytest.mark.unit
def test_with_timeout_cancels_slow_operation() -> None:
    cancelled = False

    async def _slow() -> None:
        nonlocal cancelled
        try:
            await asyncio.sleep(1)
        except asyncio.CancelledError:
            cancelled = True
            raise

    with pytest.raises(OperationTimeoutError) as exc_info:
        asyncio.run(with_timeout(_slow, 10, operation_name="slow.call"))

    assert exc_info.value.code == "timeout"
    assert "slow.call" in str(exc_info.value)
    assert cancelled is True


@pytest.mark.unit
def test_with_timeout_returns_result_within_deadline() -> None:
    async def _fast() -> int:
        return 42

    assert asyncio.run(with_timeout(_fast, 1000)) == 42


@pytest.mark.unit
def test_call_external_retries_timeouts() -> None:
    calls = 0

    async def _sometimes_slow() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(1)
        return "done"

    result = asyncio.run(
        call_external(
            _sometimes_slow,
            policy=RetryPolicy(max_attempts=2, initial_delay_ms=1),
            timeout_ms=10,
            operation_name="external.call",
            sleep=_RecordingSleep(),
        )
    )

    assert result == "done"
    assert calls == 2


@pytest.mark.unit
@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (DomainDependencyError("rate limited", status_code=429), True),
        (DomainDependencyError("server error", status_code=502), True),
        (DomainDependencyError("rejected", status_code=400), False),
        (DomainDependencyError("deadlock", code="40P01"), True),
        (OperationTimeoutError("op", 5), True),
        (httpx.ConnectError("refused"), True),
        (ConnectionResetError("reset"), True),
        (DomainValidationError("network words do not matter here"), False),
        (RuntimeError("ETIMEDOUT while reading"), True),
        (RuntimeError("unexpected"), False),
    ],
)
def test_retryable_predicate(exc: BaseException, expected: bool) -> None:
    assert is_retryable(exc) is expected
