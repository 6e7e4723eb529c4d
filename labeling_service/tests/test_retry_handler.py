import pytest
from unittest.mock import AsyncMock

from labeling_service.errors import InvalidInputError, StorageError, TransientInfrastructureError
from labeling_service.services.retry_handler import (
    FailureType, RetryConfig, RetryError, RetryHandler, RetryStrategy
)

class TestRetryHandler:
    """Test cases for RetryHandler"""

    def test_classify_failure(self, retry_handler):
        assert retry_handler.classify_failure(TransientInfrastructureError()) == FailureType.TRANSIENT
        assert retry_handler.classify_failure(ConnectionError("reset")) == FailureType.TRANSIENT
        assert retry_handler.classify_failure(TimeoutError()) == FailureType.TIMEOUT
        assert retry_handler.classify_failure(InvalidInputError("bad")) == FailureType.PERMANENT
        assert retry_handler.classify_failure(StorageError()) == FailureType.PERMANENT
        assert retry_handler.classify_failure(RuntimeError("rate limit exceeded")) == FailureType.RATE_LIMIT
        assert retry_handler.classify_failure(RuntimeError("boom")) == FailureType.UNKNOWN

    def test_transient_error_with_permanent_sounding_message(self, retry_handler):
        error = TransientInfrastructureError("invalid gateway response from storage")
        assert retry_handler.classify_failure(error) == FailureType.TRANSIENT

    def test_exponential_delay_is_bounded(self, test_settings):
        handler = RetryHandler(test_settings)
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter=False)

        delays = [handler._calculate_delay(n, config, FailureType.TRANSIENT) for n in range(1, 6)]

        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_delay_strategies(self, retry_handler):
        linear = RetryConfig(strategy=RetryStrategy.LINEAR_BACKOFF, base_delay_seconds=2.0, jitter=False)
        fixed = RetryConfig(strategy=RetryStrategy.FIXED_INTERVAL, base_delay_seconds=3.0, jitter=False)
        immediate = RetryConfig(strategy=RetryStrategy.IMMEDIATE)

        assert retry_handler._calculate_delay(3, linear, FailureType.TRANSIENT) == 6.0
        assert retry_handler._calculate_delay(3, fixed, FailureType.TRANSIENT) == 3.0
        assert retry_handler._calculate_delay(3, immediate, FailureType.TRANSIENT) == 0.0

    def test_jitter_stays_within_ten_percent(self, retry_handler):
        config = RetryConfig(base_delay_seconds=10.0, jitter=True)
        for _ in range(20):
            delay = retry_handler._calculate_delay(1, config, FailureType.TRANSIENT)
            assert 9.0 <= delay <= 11.0

    def test_should_retry(self, retry_handler):
        retry, _ = retry_handler.should_retry("op", TransientInfrastructureError(), 1)
        assert retry

        retry, _ = retry_handler.should_retry("op", TransientInfrastructureError(), 3)
        assert not retry

        retry, _ = retry_handler.should_retry("op", InvalidInputError("bad"), 1)
        assert not retry

    @pytest.mark.asyncio
    async def test_execute_succeeds_after_transient_failures(self, retry_handler):
        operation = AsyncMock(side_effect=[TransientInfrastructureError(), TransientInfrastructureError(), "ok"])

        result = await retry_handler.execute_with_retry("op", operation, None, "arg")

        assert result == "ok"
        assert operation.await_count == 3
        operation.assert_awaited_with("arg")
        assert retry_handler.get_retry_history("op") == []

    @pytest.mark.asyncio
    async def test_execute_exhausts_retries(self, retry_handler):
        operation = AsyncMock(side_effect=TransientInfrastructureError("unavailable"))

        with pytest.raises(RetryError) as exc_info:
            await retry_handler.execute_with_retry("op", operation)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientInfrastructureError)
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_execute_does_not_retry_permanent_errors(self, retry_handler):
        operation = AsyncMock(side_effect=InvalidInputError("corrupt"))

        with pytest.raises(InvalidInputError):
            await retry_handler.execute_with_retry("op", operation)

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_execute_does_not_retry_unlisted_types(self, retry_handler):
        operation = AsyncMock(side_effect=RuntimeError("temporary glitch"))

        with pytest.raises(RuntimeError):
            await retry_handler.execute_with_retry("op", operation)

        assert operation.await_count == 1

    def test_retry_statistics(self, retry_handler):
        retry_handler.should_retry("op-1", TransientInfrastructureError("unavailable"), 1)
        retry_handler.should_retry("op-1", TransientInfrastructureError("unavailable"), 2)
        retry_handler.should_retry("op-2", ConnectionError("reset"), 1)

        stats = retry_handler.get_retry_statistics()

        assert stats['total_retries'] == 3
        assert stats['operations_with_retries'] == 2
        assert stats['failure_types'] == {'TransientInfrastructureError': 2, 'ConnectionError': 1}

    def test_clear_old_retry_history(self, retry_handler):
        retry_handler.should_retry("op", TransientInfrastructureError(), 1)

        retry_handler.clear_old_retry_history(older_than_hours=0)

        assert retry_handler.get_retry_history("op") == []

    @pytest.mark.asyncio
    async def test_history_bounded_without_background_pruning(self, test_settings):
        test_settings.retry_history_max_operations = 3
        handler = RetryHandler(test_settings)
        operation = AsyncMock(side_effect=ConnectionError("connection reset"))

        for i in range(5):
            with pytest.raises(RetryError):
                await handler.execute_with_retry(f"labels:read:alice/{i}.jpg", operation)

        assert list(handler.retry_history) == [
            "labels:read:alice/2.jpg", "labels:read:alice/3.jpg", "labels:read:alice/4.jpg"
        ]
        assert len(handler.get_retry_history("labels:read:alice/4.jpg")) == 2

    def test_retried_operation_moves_to_newest(self, test_settings):
        test_settings.retry_history_max_operations = 2
        handler = RetryHandler(test_settings)

        handler.should_retry("op-1", ConnectionError("reset"), 1)
        handler.should_retry("op-2", ConnectionError("reset"), 1)
        handler.should_retry("op-1", ConnectionError("reset"), 2)
        handler.should_retry("op-3", ConnectionError("reset"), 1)

        assert list(handler.retry_history) == ["op-1", "op-3"]
