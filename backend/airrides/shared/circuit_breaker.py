from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, TypeVar

from airrides.infra.metrics import metrics


logger = logging.getLogger("airrides.circuit")

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    pass


class CircuitBreaker(Generic[T]):
    """Failure-window circuit breaker for outbound gateway calls.

    ``failure_threshold`` failures inside ``window_seconds`` open the circuit.
    After ``recovery_time`` seconds a limited number of half-open trial calls are
    let through; one success closes it again.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        ignore: tuple[type[BaseException], ...] = (),
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self.ignore = ignore
        self._state: str = CLOSED
        self._opened_at: float = 0.0
        self._failures: Deque[float] = deque()
        self._half_open_calls: int = 0
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state)

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        await self._ensure_available()
        try:
            if self.timeout_seconds is None:
                result = await fn(*args, **kwargs)
            else:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout_seconds)
        except self.ignore:
            # Caller-side errors (e.g. a 4xx from the gateway) say nothing about its health.
            await self._record_success()
            raise
        except Exception as exc:  # noqa: BLE001
            await self._record_failure()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self._state, "error": type(exc).__name__}},
            )
            raise
        await self._record_success()
        return result

    async def _ensure_available(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if self._state == OPEN:
                if now - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(f"circuit_open:{self.name}")
                self._set_state(HALF_OPEN)
                self._half_open_calls = 0
            if self._state == HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(f"circuit_half_open_limit:{self.name}")
                self._half_open_calls += 1

    async def _record_failure(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self._failures.append(now)
            window_start = now - self.window_seconds
            while self._failures and self._failures[0] < window_start:
                self._failures.popleft()
            if self._state == HALF_OPEN or len(self._failures) >= self.failure_threshold:
                self._opened_at = now
                self._half_open_calls = 0
                self._set_state(OPEN)
                logger.warning("circuit_opened", extra={"extra": {"name": self.name}})

    async def _record_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            if self._state != CLOSED:
                logger.info("circuit_closed", extra={"extra": {"name": self.name}})
            self._half_open_calls = 0
            self._set_state(CLOSED)

    def _set_state(self, state: str) -> None:
        self._state = state
        metrics.record_circuit_state(self.name, state)

    def reset(self) -> None:
        self._failures.clear()
        self._half_open_calls = 0
        self._opened_at = 0.0
        self._set_state(CLOSED)

    @property
    def state(self) -> str:
        return self._state
