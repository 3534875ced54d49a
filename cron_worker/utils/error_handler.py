"""
Error handling utilities with exponential backoff retry logic.

Provides error classification for transient vs permanent job failures,
retry decorators, and a circuit breaker for outbound HTTP targets.
"""

import asyncio
import functools
import inspect
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Type

import aiohttp


logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error category classification"""
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    RATE_LIMITED = "rate_limited"


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.2  # +/- 20%


@dataclass
class RetryMetrics:
    """Metrics for retry operations"""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retry_count: int = 0
    total_retry_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_timestamp: Optional[datetime] = None


class CircuitOpenError(Exception):
    """Raised when a call is rejected by an open circuit breaker."""

    retryable = True


# Retryable exception types
RETRYABLE_EXCEPTIONS = (
    # Timeouts (asyncio.TimeoutError is an alias of TimeoutError on 3.11+)
    asyncio.TimeoutError,
    TimeoutError,
    # Network errors
    ConnectionError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
    CircuitOpenError,
)


# Non-retryable exception types
NON_RETRYABLE_EXCEPTIONS = (
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
    ImportError,
    PermissionError,
    FileNotFoundError,
)

RETRYABLE_STATUS_CODES = frozenset({408, 500, 502, 503, 504})


def classify_error(exception: BaseException) -> ErrorCategory:
    """
    Classify an exception as retryable or non-retryable.

    Args:
        exception: The exception to classify

    Returns:
        ErrorCategory indicating retry behavior
    """
    # Explicit verdict from the raiser wins
    retryable = getattr(exception, "retryable", None)
    status_code = getattr(exception, "status", None)

    if isinstance(status_code, int):
        if status_code == 429:
            return ErrorCategory.RATE_LIMITED
        if status_code in RETRYABLE_STATUS_CODES:
            return ErrorCategory.RETRYABLE
        if 400 <= status_code < 500 and retryable is None:
            return ErrorCategory.NON_RETRYABLE

    if retryable is not None:
        return ErrorCategory.RETRYABLE if retryable else ErrorCategory.NON_RETRYABLE

    if isinstance(exception, RETRYABLE_EXCEPTIONS):
        return ErrorCategory.RETRYABLE

    if isinstance(exception, NON_RETRYABLE_EXCEPTIONS):
        return ErrorCategory.NON_RETRYABLE

    # Check error message for common patterns
    error_msg = str(exception).lower()
    retryable_patterns = [
        'connection',
        'timeout',
        'timed out',
        'unavailable',
        'temporary',
        'transient'
    ]

    if any(pattern in error_msg for pattern in retryable_patterns):
        return ErrorCategory.RETRYABLE

    # Default to non-retryable for safety
    return ErrorCategory.NON_RETRYABLE


def is_retryable(
    exception: BaseException,
    retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
) -> bool:
    """True when ``exception`` should be retried.

    ``retryable_exceptions`` widens the classification: instances of those
    types are retried regardless of what ``classify_error`` says.
    """
    if retryable_exceptions and isinstance(exception, retryable_exceptions):
        return True
    return classify_error(exception) != ErrorCategory.NON_RETRYABLE


def calculate_delay(
    attempt: int,
    config: RetryConfig
) -> float:
    """
    Calculate delay for retry attempt with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter = random.uniform(-config.jitter_range, config.jitter_range)
        delay = delay * (1 + jitter)

    return max(0.0, delay)


def _log_give_up(func_name: str, attempt: int, config: RetryConfig, exc: BaseException,
                 metrics: RetryMetrics, retryable: bool) -> None:
    if not retryable:
        logger.error(
            f"Non-retryable error in {func_name}: {exc}",
            extra={
                "function": func_name,
                "attempt": attempt + 1,
                "error_type": type(exc).__name__
            }
        )
    else:
        logger.error(
            f"Max retries exhausted for {func_name}: {exc}",
            extra={
                "function": func_name,
                "max_attempts": config.max_attempts,
                "total_retry_duration_ms": metrics.total_retry_duration_ms,
                "error_type": type(exc).__name__
            }
        )


def _prepare_retry(func_name: str, attempt: int, config: RetryConfig, exc: BaseException,
                   metrics: RetryMetrics, on_retry: Optional[Callable]) -> float:
    delay = calculate_delay(attempt, config)
    metrics.retry_count += 1
    metrics.total_retry_duration_ms += delay * 1000

    logger.warning(
        f"Retrying {func_name} after {delay:.2f}s (attempt {attempt + 1}/{config.max_attempts}): {exc}",
        extra={
            "function": func_name,
            "attempt": attempt + 1,
            "max_attempts": config.max_attempts,
            "delay_seconds": delay,
            "error_type": type(exc).__name__,
            "error_category": classify_error(exc).value
        }
    )

    if on_retry:
        on_retry(attempt, exc, delay)

    return delay


def retry_with_backoff(
    config: Optional[RetryConfig] = None,
    retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    metrics: Optional[RetryMetrics] = None
):
    """
    Decorator for retrying operations with exponential backoff.

    Args:
        config: Retry configuration (uses defaults if None)
        retryable_exceptions: Exception types retried regardless of classification
        on_retry: Optional callback called on each retry with (attempt, error, delay)
        metrics: Optional metrics object to track retry stats

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(RetryConfig(max_attempts=5))
        async def ping_webhook(session, url):
            return await session.post(url)
    """
    if config is None:
        config = RetryConfig()

    if metrics is None:
        metrics = RetryMetrics()

    def record_failure(exc: BaseException) -> None:
        metrics.last_error = str(exc)
        metrics.last_error_timestamp = datetime.now(timezone.utc)

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                metrics.total_attempts += 1
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    record_failure(e)
                    retryable = is_retryable(e, retryable_exceptions)
                    if not retryable or attempt == config.max_attempts - 1:
                        _log_give_up(func.__name__, attempt, config, e, metrics, retryable)
                        metrics.failed_attempts += 1
                        raise
                    delay = _prepare_retry(func.__name__, attempt, config, e, metrics, on_retry)
                    await asyncio.sleep(delay)
                else:
                    metrics.successful_attempts += 1
                    return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                metrics.total_attempts += 1
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    record_failure(e)
                    retryable = is_retryable(e, retryable_exceptions)
                    if not retryable or attempt == config.max_attempts - 1:
                        _log_give_up(func.__name__, attempt, config, e, metrics, retryable)
                        metrics.failed_attempts += 1
                        raise
                    delay = _prepare_retry(func.__name__, attempt, config, e, metrics, on_retry)
                    time.sleep(delay)
                else:
                    metrics.successful_attempts += 1
                    return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@dataclass
class CircuitBreakerState:
    """State for circuit breaker pattern"""
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    state: str = "closed"  # closed, open, half-open
    failure_threshold: int = 5
    timeout_seconds: float = 60.0


class CircuitBreaker:
    """
    Circuit breaker to prevent hammering a failing downstream.

    States:
    - CLOSED: Normal operation, requests go through
    - OPEN: Too many failures, reject requests immediately
    - HALF_OPEN: After timeout, allow one request to test recovery
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = CircuitBreakerState(
            failure_threshold=failure_threshold,
            timeout_seconds=timeout_seconds
        )
        self._clock = clock

    def check_state(self) -> str:
        """Check and update circuit breaker state"""
        if self.state.state == "open" and self.state.last_failure_time is not None:
            elapsed = self._clock() - self.state.last_failure_time
            if elapsed >= self.state.timeout_seconds:
                self.state.state = "half-open"
                logger.info("Circuit breaker transitioning to half-open state")

        return self.state.state

    def record_success(self):
        """Record successful operation"""
        if self.state.state == "half-open":
            logger.info("Circuit breaker closed after successful recovery")
        self.state.state = "closed"
        self.state.failure_count = 0

    def record_failure(self):
        """Record failed operation"""
        self.state.failure_count += 1
        self.state.last_failure_time = self._clock()

        # A failed trial call re-opens immediately
        if self.state.state == "half-open" or self.state.failure_count >= self.state.failure_threshold:
            if self.state.state != "open":
                logger.warning(
                    f"Circuit breaker opened after {self.state.failure_count} failures",
                    extra={
                        "failure_count": self.state.failure_count,
                        "threshold": self.state.failure_threshold
                    }
                )
            self.state.state = "open"

    def is_call_permitted(self) -> bool:
        """Check if call is permitted based on circuit state"""
        return self.check_state() != "open"


def with_circuit_breaker(circuit_breaker: CircuitBreaker):
    """
    Decorator to apply circuit breaker pattern.

    Args:
        circuit_breaker: CircuitBreaker instance to use

    Example:
        cb = CircuitBreaker(failure_threshold=5, timeout_seconds=60)

        @with_circuit_breaker(cb)
        async def call_external_service():
            ...
    """

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            if not circuit_breaker.is_call_permitted():
                raise CircuitOpenError("Circuit breaker is open, rejecting call")

            try:
                result = await func(*args, **kwargs)
            except Exception:
                circuit_breaker.record_failure()
                raise
            circuit_breaker.record_success()
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            if not circuit_breaker.is_call_permitted():
                raise CircuitOpenError("Circuit breaker is open, rejecting call")

            try:
                result = func(*args, **kwargs)
            except Exception:
                circuit_breaker.record_failure()
                raise
            circuit_breaker.record_success()
            return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
