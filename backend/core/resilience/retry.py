"""Retry and Timeout Policies

Timeouts turn into ``Err(timeout_error)`` values rather than exceptions, and
retries back off exponentially with jitter on transient external errors.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, TypeVar

from core.errors import AppError, ErrorCode, Err, Ok, Result, timeout_error

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 2
    base_delay_seconds: float = 0.25
    max_delay_seconds: float = 2.0
    jitter_factor: float = 0.5
    multiplier: float = 2.0
    retryable_codes: frozenset[ErrorCode] = field(
        default_factory=lambda: frozenset({
            ErrorCode.E1000_NETWORK_GENERIC,
            ErrorCode.E1011_EXTERNAL_SERVICE_ERROR,
            ErrorCode.E1013_RATE_LIMITED,
        })
    )

    def delay_for(self, attempt: int) -> float:
        """Exponential delay for a 1-indexed attempt, with random jitter."""
        delay = self.base_delay_seconds * (self.multiplier ** (attempt - 1))
        jitter = delay * self.jitter_factor * random.random()
        return min(delay + jitter, self.max_delay_seconds)


class RetryPolicy(Generic[T]):
    """Retries an operation while it fails with a retryable code."""

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()

    def should_retry(self, error: AppError, attempt: int) -> bool:
        if attempt >= self.config.max_attempts:
            return False
        return error.code in self.config.retryable_codes

    async def execute(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        attempt = 0
        while True:
            attempt += 1
            result = await fn()
            match result:
                case Ok(_):
                    return result
                case Err(error):
                    if not self.should_retry(error, attempt):
                        return result
                    await asyncio.sleep(self.config.delay_for(attempt))


class TimeoutPolicy(Generic[T]):
    """Timeout wrapper for async operations.

    Usage:
        policy = TimeoutPolicy(timeout_seconds=5.0, operation_name="content_generation")
        result = await policy.execute(slow_operation)
    """

    def __init__(self, timeout_seconds: float, operation_name: str = "operation"):
        self.timeout_seconds = timeout_seconds
        self.operation_name = operation_name

    async def execute(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        try:
            return await asyncio.wait_for(fn(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return timeout_error(
                self.operation_name,
                self.timeout_seconds,
                origin="timeout_policy",
            )


class CombinedPolicy(Generic[T]):
    """Each attempt gets its own timeout; timeouts themselves are not retried."""

    def __init__(
        self,
        timeout_seconds: float,
        retry_config: RetryConfig | None = None,
        operation_name: str = "operation",
    ):
        self.timeout = TimeoutPolicy[T](timeout_seconds, operation_name)
        self.retry = RetryPolicy[T](retry_config)

    async def execute(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        async def timed_fn() -> Result[T, AppError]:
            return await self.timeout.execute(fn)

        return await self.retry.execute(timed_fn)
