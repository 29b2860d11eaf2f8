"""
Retry with backoff for transport I/O.

Only failures classified as transient (dropped connections, timeouts,
throttling, server errors) are retried; everything else propagates on the
first attempt. Because stored objects are immutable and content-addressed,
re-sending a batch that may already have landed is always safe.

Usage
─────

    retry = RetryPolicy(
        max_attempts=3,
        retryable_exceptions=(TransientError,),
    )
    result = retry.execute(lambda: session.post(url, json=body))
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    EXPONENTIAL = auto()         # Exponential backoff (2^n)
    EXPONENTIAL_JITTER = auto()  # Exponential with random jitter


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5
    retryable_exceptions: tuple = (Exception,)
    non_retryable_exceptions: tuple = ()


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Retry policy with exponential backoff.

    Example:
        retry = RetryPolicy(max_attempts=3, backoff_strategy=BackoffStrategy.EXPONENTIAL)
        retry.execute(external_service.call)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.5,
        max_delay_seconds: float = 30.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (Exception,),
        non_retryable_exceptions: tuple = (),
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
            retryable_exceptions=retryable_exceptions,
            non_retryable_exceptions=non_retryable_exceptions,
        )
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()
        self._on_retry = on_retry
        self._sleep = sleep

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return RetryMetrics(
                total_attempts=self._metrics.total_attempts,
                successful_attempts=self._metrics.successful_attempts,
                failed_attempts=self._metrics.failed_attempts,
                retries_exhausted=self._metrics.retries_exhausted,
                total_retry_delay_seconds=self._metrics.total_retry_delay_seconds,
            )

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay before next retry."""
        delay = self.config.base_delay_seconds * (2 ** (attempt - 1))
        if self.config.backoff_strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            delay += random.uniform(0, self.config.jitter_factor * delay)
        return min(delay, self.config.max_delay_seconds)

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, self.config.non_retryable_exceptions):
            return False
        return isinstance(exc, self.config.retryable_exceptions)

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with retry policy.

        Non-retryable exceptions propagate unchanged; when every attempt
        fails with a retryable one, RetryExhaustedError is raised.
        """
        attempt = 0
        while True:
            attempt += 1
            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result
            except Exception as e:
                with self._lock:
                    self._metrics.failed_attempts += 1

                if not self._is_retryable(e):
                    raise

                if attempt >= self.config.max_attempts:
                    with self._lock:
                        self._metrics.retries_exhausted += 1
                    raise RetryExhaustedError(attempt, e) from e

                delay = self._calculate_delay(attempt)
                with self._lock:
                    self._metrics.total_retry_delay_seconds += delay

                if self._on_retry:
                    self._on_retry(attempt, e, delay)

                self._sleep(delay)
