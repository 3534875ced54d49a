"""
Unit tests for exponential backoff retry logic.

Tests error classification, the retry decorator and the circuit breaker
used for transient job failures and outbound HTTP targets.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

from cron_worker.executor.targets import JobExecutionError
from cron_worker.utils.error_handler import (
    CircuitBreaker,
    CircuitOpenError,
    ErrorCategory,
    RetryConfig,
    RetryMetrics,
    calculate_delay,
    classify_error,
    is_retryable,
    retry_with_backoff,
    with_circuit_breaker,
)


class StatusError(Exception):
    """Error carrying an HTTP status, like aiohttp.ClientResponseError"""

    def __init__(self, status, retryable=None):
        super().__init__(f"HTTP {status}")
        self.status = status
        if retryable is not None:
            self.retryable = retryable


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestErrorClassification:
    """Test transient vs permanent error classification"""

    def test_timeouts_are_retryable(self):
        """Test that timeouts are retried"""
        assert classify_error(asyncio.TimeoutError()) == ErrorCategory.RETRYABLE
        assert classify_error(TimeoutError("read timed out")) == ErrorCategory.RETRYABLE

    def test_connection_errors_are_retryable(self):
        """Test that network errors are retried"""
        assert classify_error(ConnectionResetError()) == ErrorCategory.RETRYABLE
        assert classify_error(aiohttp.ClientConnectionError()) == ErrorCategory.RETRYABLE

    def test_programming_errors_are_not_retryable(self):
        """Test that bugs in the job are not retried"""
        assert classify_error(ValueError("bad input")) == ErrorCategory.NON_RETRYABLE
        assert classify_error(KeyError("missing")) == ErrorCategory.NON_RETRYABLE
        assert classify_error(ImportError("no module")) == ErrorCategory.NON_RETRYABLE

    def test_rate_limited_status(self):
        """Test that HTTP 429 is classified as rate limited"""
        assert classify_error(StatusError(429)) == ErrorCategory.RATE_LIMITED

    def test_server_errors_are_retryable(self):
        """Test that 5xx responses are retried"""
        for status in (500, 502, 503, 504, 408):
            assert classify_error(StatusError(status)) == ErrorCategory.RETRYABLE

    def test_client_errors_are_not_retryable(self):
        """Test that other 4xx responses are not retried"""
        assert classify_error(StatusError(404)) == ErrorCategory.NON_RETRYABLE
        assert classify_error(StatusError(400)) == ErrorCategory.NON_RETRYABLE

    def test_explicit_retryable_attribute_wins(self):
        """Test that the raiser's verdict overrides type-based rules"""
        assert classify_error(JobExecutionError("exit 1", retryable=True)) == ErrorCategory.RETRYABLE
        assert classify_error(JobExecutionError("bad ref", retryable=False)) == ErrorCategory.NON_RETRYABLE

    def test_message_patterns(self):
        """Test fallback classification on the error message"""
        assert classify_error(RuntimeError("service temporarily unavailable")) == ErrorCategory.RETRYABLE
        assert classify_error(RuntimeError("something odd")) == ErrorCategory.NON_RETRYABLE

    def test_open_circuit_is_retryable(self):
        """Test that an open breaker is worth waiting out"""
        assert classify_error(CircuitOpenError("open")) == ErrorCategory.RETRYABLE

    def test_is_retryable_widened_by_types(self):
        """Test that extra exception types force a retry"""
        assert not is_retryable(ValueError("x"))
        assert is_retryable(ValueError("x"), retryable_exceptions=(ValueError,))


class TestExponentialBackoff:
    """Test exponential backoff delay calculation"""

    def test_exponential_backoff_delays(self):
        """Test that delays follow exponential backoff pattern"""
        config = RetryConfig(initial_delay=0.1, max_delay=1.0, exponential_base=2, jitter=False)

        delays = [calculate_delay(attempt, config) for attempt in range(5)]

        # Expected: [0.1, 0.2, 0.4, 0.8, 1.0] (capped at max_delay)
        assert delays == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.0])

    def test_jitter_stays_in_range(self):
        """Test that jitter varies the delay within +/- jitter_range"""
        config = RetryConfig(initial_delay=1.0, jitter=True, jitter_range=0.2)

        for _ in range(50):
            delay = calculate_delay(0, config)
            assert 0.8 <= delay <= 1.2

    def test_delay_never_negative(self):
        """Test that a zero delay stays zero with jitter"""
        config = RetryConfig(initial_delay=0.0, jitter=True)
        assert calculate_delay(3, config) == 0.0


class TestRetryDecorator:
    """Test the retry_with_backoff decorator"""

    @pytest.fixture
    def retry_config(self):
        """Retry configuration without delays"""
        return RetryConfig(max_attempts=3, initial_delay=0.0, jitter=False)

    def test_successful_operation_no_retry(self, retry_config):
        """Test that successful operations don't trigger retries"""
        metrics = RetryMetrics()
        func = Mock(return_value="success")
        func.__name__ = "func"

        result = retry_with_backoff(retry_config, metrics=metrics)(func)()

        assert result == "success"
        assert func.call_count == 1
        assert metrics.successful_attempts == 1
        assert metrics.retry_count == 0

    def test_retry_on_transient_failure(self, retry_config):
        """Test retry on transient failures"""
        func = Mock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "success"])
        func.__name__ = "func"
        on_retry = Mock()

        result = retry_with_backoff(retry_config, on_retry=on_retry)(func)()

        assert result == "success"
        assert func.call_count == 3
        assert on_retry.call_count == 2

    def test_max_retries_exhausted(self, retry_config):
        """Test that retries are exhausted after max attempts"""
        metrics = RetryMetrics()
        func = Mock(side_effect=ConnectionError("down"))
        func.__name__ = "func"

        with pytest.raises(ConnectionError):
            retry_with_backoff(retry_config, metrics=metrics)(func)()

        assert func.call_count == 3
        assert metrics.failed_attempts == 1
        assert metrics.last_error == "down"

    def test_non_retryable_error_no_retry(self, retry_config):
        """Test that non-retryable errors don't trigger retries"""
        func = Mock(side_effect=ValueError("invalid"))
        func.__name__ = "func"

        with pytest.raises(ValueError):
            retry_with_backoff(retry_config)(func)()

        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_async_retry_logic(self, retry_config):
        """Test retry logic for async operations"""
        call_count = 0

        @retry_with_backoff(retry_config)
        async def flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise asyncio.TimeoutError()
            return "done"

        assert await flaky() == "done"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_async_sleeps_between_attempts(self):
        """Test that the async wrapper sleeps for the computed delay"""
        config = RetryConfig(max_attempts=2, initial_delay=0.5, jitter=False)

        @retry_with_backoff(config)
        async def flaky():
            raise ConnectionError("down")

        with patch("cron_worker.utils.error_handler.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(ConnectionError):
                await flaky()

        sleep.assert_called_once_with(0.5)


class TestCircuitBreaker:
    """Test circuit breaker state machine"""

    def test_opens_after_threshold(self):
        """Test that the breaker opens after N consecutive failures"""
        breaker = CircuitBreaker(failure_threshold=3, timeout_seconds=10, clock=FakeClock())

        for _ in range(2):
            breaker.record_failure()
        assert breaker.is_call_permitted()

        breaker.record_failure()
        assert not breaker.is_call_permitted()
        assert breaker.check_state() == "open"

    def test_half_open_after_timeout(self):
        """Test that the breaker lets a trial call through after the timeout"""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, timeout_seconds=10, clock=clock)
        breaker.record_failure()

        clock.now = 10.0
        assert breaker.check_state() == "half-open"
        assert breaker.is_call_permitted()

    def test_failed_trial_call_reopens(self):
        """Test that a failure in half-open re-opens immediately"""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, timeout_seconds=10, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now = 11.0
        assert breaker.check_state() == "half-open"

        breaker.record_failure()
        assert breaker.check_state() == "open"

    def test_success_closes(self):
        """Test that a successful trial call closes the breaker"""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, timeout_seconds=5, clock=clock)
        breaker.record_failure()
        clock.now = 6.0
        breaker.check_state()

        breaker.record_success()
        assert breaker.check_state() == "closed"
        assert breaker.state.failure_count == 0

    @pytest.mark.asyncio
    async def test_decorator_rejects_when_open(self):
        """Test that with_circuit_breaker raises CircuitOpenError when open"""
        breaker = CircuitBreaker(failure_threshold=1, timeout_seconds=60, clock=FakeClock())
        calls = 0

        @with_circuit_breaker(breaker)
        async def call():
            nonlocal calls
            calls += 1
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await call()
        with pytest.raises(CircuitOpenError):
            await call()

        assert calls == 1
