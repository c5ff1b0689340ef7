"""
Tests for retry with exponential backoff.

Sleeps are injected so no test waits in real time.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from trailbook_storage.exceptions import (
    PermissionDeniedError,
    RecordNotFoundError,
    StorageConnectionError,
    TransientStorageError,
    ValidationError,
)
from trailbook_storage.resilience import (
    AGGRESSIVE_RETRY_POLICY,
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    jittered_delay,
    retry_result,
    retry_with_backoff,
)
from trailbook_storage.result import LOADING, Error, Success


class StatusError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class TestRetryPolicy:
    def test_defaults(self):
        assert DEFAULT_RETRY_POLICY.max_retries == 3
        assert DEFAULT_RETRY_POLICY.initial_delay == 1.0
        assert AGGRESSIVE_RETRY_POLICY.max_retries == 5
        assert AGGRESSIVE_RETRY_POLICY.backoff_factor == 2.5

    def test_base_delay_is_capped(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, backoff_factor=2.0)
        assert [policy.base_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_band(self):
        for _ in range(50):
            delay = jittered_delay(10.0, 0.1)
            assert 9.0 <= delay <= 11.0
        assert jittered_delay(3.0, 0.0) == 3.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": 0},
            {"initial_delay": -1.0},
            {"backoff_factor": 0.5},
            {"jitter_factor": 1.5},
        ],
    )
    def test_rejects_invalid_configuration(self, kwargs):
        with pytest.raises(ValidationError):
            RetryPolicy(**kwargs)

    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError(),
            ConnectionResetError(),
            TransientStorageError("read"),
            TransientStorageError("upsert", RuntimeError("Request timeout"), status_code=408),
            TransientStorageError("upsert", status_code=449),
            TransientStorageError("upload", status_code=502),
            StorageConnectionError("cosmos", OSError("refused")),
            StatusError("internal error", 500),
            Exception("Service temporarily unavailable"),
            Exception("request timed out"),
            StatusError("throttled", 429),
            StatusError("bad gateway", 503),
        ],
    )
    def test_transient_errors_are_retryable(self, error):
        assert DEFAULT_RETRY_POLICY.is_retryable(error)

    @pytest.mark.parametrize(
        "error",
        [
            ValidationError("id", "blank"),
            PermissionDeniedError("u1", "hike", "not owner"),
            RecordNotFoundError("hike", "h1"),
            ValueError("bad input"),
            StatusError("network unreachable", 404),
        ],
    )
    def test_permanent_errors_are_not_retryable(self, error):
        assert not DEFAULT_RETRY_POLICY.is_retryable(error)

    def test_custom_predicate(self):
        policy = RetryPolicy(retryable_predicate=lambda exc: isinstance(exc, KeyError))
        assert policy.is_retryable(KeyError("x"))
        assert not policy.is_retryable(IndexError("x"))


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        fn = AsyncMock(return_value="ok")
        sleep = AsyncMock()

        assert await retry_with_backoff(fn, 1, key="v", sleep=sleep) == "ok"
        fn.assert_awaited_once_with(1, key="v")
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausts_attempts_with_growing_delays(self):
        fn = AsyncMock(side_effect=TimeoutError("slow"))
        sleep = AsyncMock()
        policy = RetryPolicy(max_retries=4, initial_delay=0.1, backoff_factor=2.0, jitter_factor=0.0)

        with pytest.raises(TimeoutError):
            await retry_with_backoff(fn, policy=policy, sleep=sleep)

        assert fn.await_count == 4
        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays == pytest.approx([0.1, 0.2, 0.4])

    @pytest.mark.asyncio
    async def test_default_delays_within_jitter(self):
        fn = AsyncMock(side_effect=TransientStorageError("write"))
        sleep = AsyncMock()
        policy = RetryPolicy(max_retries=3, initial_delay=0.1, jitter_factor=0.1)

        with pytest.raises(TransientStorageError):
            await retry_with_backoff(fn, policy=policy, sleep=sleep)

        delays = [call.args[0] for call in sleep.await_args_list]
        assert len(delays) == 2
        assert 0.09 <= delays[0] <= 0.11
        assert 0.18 <= delays[1] <= 0.22

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        fn = AsyncMock(side_effect=[ConnectionError("reset"), "done"])
        sleep = AsyncMock()

        assert await retry_with_backoff(fn, sleep=sleep) == "done"
        assert fn.await_count == 2
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 449, 500, 502])
    async def test_translated_status_errors_use_every_attempt(self, status):
        fn = AsyncMock(
            side_effect=TransientStorageError("upsert", RuntimeError("Request timeout"), status)
        )
        policy = RetryPolicy(max_retries=3, initial_delay=0.0, jitter_factor=0.0)

        with pytest.raises(TransientStorageError):
            await retry_with_backoff(fn, policy=policy, sleep=AsyncMock())
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        fn = AsyncMock(side_effect=ValidationError("name", "blank"))
        sleep = AsyncMock()

        with pytest.raises(ValidationError):
            await retry_with_backoff(fn, sleep=sleep)
        assert fn.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_after_header_wins(self):
        response = MagicMock()
        response.status_code = 429
        response.headers = {"Retry-After": "0.7"}
        error = Exception("throttled")
        error.response = response
        fn = AsyncMock(side_effect=[error, "ok"])
        sleep = AsyncMock()

        assert await retry_with_backoff(fn, sleep=sleep) == "ok"
        sleep.assert_awaited_once_with(0.7)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        fn = AsyncMock(side_effect=asyncio.CancelledError())
        sleep = AsyncMock()

        with pytest.raises(asyncio.CancelledError):
            await retry_with_backoff(fn, sleep=sleep)
        sleep.assert_not_awaited()


class TestRetryResult:
    @pytest.mark.asyncio
    async def test_retries_error_results(self):
        fn = AsyncMock(side_effect=[Error(TransientStorageError("write")), Success(5)])
        sleep = AsyncMock()

        assert await retry_result(fn, sleep=sleep) == Success(5)
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_returns_error_after_exhaustion(self):
        cause = TransientStorageError("write")
        fn = AsyncMock(return_value=Error(cause))
        sleep = AsyncMock()
        policy = RetryPolicy(max_retries=2, jitter_factor=0.0)

        result = await retry_result(fn, policy=policy, sleep=sleep)

        assert isinstance(result, Error)
        assert result.cause is cause
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_loading_passes_through(self):
        fn = AsyncMock(return_value=LOADING)
        sleep = AsyncMock()

        assert await retry_result(fn, sleep=sleep) is LOADING
        fn.assert_awaited_once()
        sleep.assert_not_awaited()
