"""Circuit Breaker

Guards the AI content collaborator. After ``failure_threshold`` consecutive
failures the circuit opens and calls are rejected with ``circuit_open`` until
``reset_seconds`` have elapsed, then one trial call is let through.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Generic, TypeVar

from core.errors import AppError, ErrorCode, Err, Ok, Result, circuit_open
from core.logging import engine_logger

T = TypeVar("T")

log = engine_logger()


class CircuitState(Enum):
    CLOSED = auto()     # Normal operation
    OPEN = auto()       # Failing, calls rejected immediately
    HALF_OPEN = auto()  # Probing for recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 3
    success_threshold: int = 1
    reset_seconds: float = 30.0
    excluded_codes: frozenset[ErrorCode] = field(
        default_factory=lambda: frozenset({
            ErrorCode.E2000_VALIDATION_GENERIC,
            ErrorCode.E2002_INVALID_FORMAT,
        })
    )


class CircuitBreaker(Generic[T]):
    """Circuit breaker for external service protection.

    Usage:
        breaker = CircuitBreaker("openai-content", config)
        result = await breaker.call(lambda: generator.generate(request))
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        log.info(
            "circuit_state_changed",
            circuit=self.name,
            from_state=self._state.name,
            to_state=new_state.name,
        )
        self._state = new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        self._failure_count = 0 if new_state is CircuitState.CLOSED else self._failure_count
        self._success_count = 0

    async def _can_execute(self) -> bool:
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if self._clock() - self._opened_at >= self.config.reset_seconds:
                    self._transition_to(CircuitState.HALF_OPEN)
                    return True
                return False
            return True

    async def _record(self, result: Result[T, AppError]) -> None:
        async with self._lock:
            match result:
                case Ok(_):
                    self._success_count += 1
                    if self._state is CircuitState.HALF_OPEN:
                        if self._success_count >= self.config.success_threshold:
                            self._transition_to(CircuitState.CLOSED)
                    else:
                        self._failure_count = 0
                case Err(error):
                    if error.code in self.config.excluded_codes:
                        return
                    self._failure_count += 1
                    if self._state is CircuitState.HALF_OPEN:
                        self._transition_to(CircuitState.OPEN)
                    elif self._failure_count >= self.config.failure_threshold:
                        self._transition_to(CircuitState.OPEN)

    async def call(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        """Execute ``fn`` if the circuit allows it.

        Exceptions raised by ``fn`` are converted to E1011 errors and count
        as failures.
        """
        if not await self._can_execute():
            return circuit_open(self.name, origin="circuit_breaker")

        try:
            result = await fn()
        except Exception as e:
            result = Err(AppError(
                code=ErrorCode.E1011_EXTERNAL_SERVICE_ERROR,
                message=str(e),
                cause=e,
            ))

        await self._record(result)
        return result

    def reset(self) -> None:
        self._transition_to(CircuitState.CLOSED)
