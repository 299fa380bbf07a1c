"""
Circuit Breaker - per-dependency failure tracking.

States:
- closed: calls pass through, consecutive failures are counted
- open: calls fail fast with CircuitOpenError, the dependency is not called
- half_open: after the recovery timeout, a bounded number of trial calls are
  admitted; a trial success closes the circuit, a trial failure re-opens it

State is kept in-process and keyed by dependency name ("ai-provider", ...).
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from loguru import logger

from config import get_settings
from learnloop.errors import CircuitOpenError, ErrorKind, classify_exception

T = TypeVar("T")

# Failures that say something about the dependency's health. Validation or
# auth errors mean the dependency answered, so they do not trip the breaker.
HEALTH_FAILURE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT_EXCEEDED,
        ErrorKind.SERVICE_UNAVAILABLE,
        ErrorKind.TIMEOUT,
        ErrorKind.NETWORK_ERROR,
        ErrorKind.UNKNOWN,
    }
)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def counts_as_failure(exc: BaseException) -> bool:
    return classify_exception(exc) in HEALTH_FAILURE_KINDS


class CircuitBreaker:
    """
    Guard for a single external dependency.

    Example:
        >>> breaker = CircuitBreaker("ai-provider", failure_threshold=3)
        >>> result = await breaker.call(gateway.generate, prompt)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] = counts_as_failure,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._is_failure = is_failure
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._trials_in_flight = 0

    # ----------------------------------------
    # State inspection
    # ----------------------------------------

    def _refresh(self) -> None:
        """Move open -> half_open once the recovery timeout has elapsed. Caller holds the lock."""
        if self._state is CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._trials_in_flight = 0
                logger.info(f"Circuit '{self.name}' half-open, admitting trial calls")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def retry_after(self) -> float | None:
        """Seconds until an open circuit admits trial calls, None when not open."""
        with self._lock:
            self._refresh()
            if self._state is not CircuitState.OPEN or self._opened_at is None:
                return None
            return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._refresh()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "opened_at": self._opened_at,
                "trials_in_flight": self._trials_in_flight,
            }

    # ----------------------------------------
    # Transitions
    # ----------------------------------------

    def before_call(self) -> bool:
        """
        Admit or reject a call. Raises CircuitOpenError when rejected.

        Returns:
            True when the call was admitted as a half-open trial.
        """
        with self._lock:
            self._refresh()
            if self._state is CircuitState.CLOSED:
                return False
            if self._state is CircuitState.HALF_OPEN and self._trials_in_flight < self.half_open_max_calls:
                self._trials_in_flight += 1
                return True
            if self._state is CircuitState.OPEN and self._opened_at is not None:
                remaining = max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))
            else:
                remaining = None
        raise CircuitOpenError(self.name, retry_after=remaining)

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.OPEN:
                # late result from a call admitted before the circuit opened
                return
            if self._state is CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' closed after successful trial call")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trials_in_flight = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                logger.warning(f"Circuit '{self.name}' re-opened after failed trial call")
            elif self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()
                logger.warning(
                    f"Circuit '{self.name}' opened after {self._failure_count} consecutive failures"
                )

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trials_in_flight = 0

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trials_in_flight = 0

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run an async callable through the breaker."""
        trial = self.before_call()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            # a trial cut off by the job timeout re-opens the circuit
            if trial:
                self.record_failure()
            raise
        except Exception as e:
            if self._is_failure(e):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result


class CircuitBreakerRegistry:
    """Process-wide breakers keyed by dependency name."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, **overrides: Any) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                config = dict(get_settings().get_circuit_breaker_config())
                config.update(overrides)
                breaker = CircuitBreaker(name, clock=self._clock, **config)
                self._breakers[name] = breaker
            return breaker

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.snapshot() for b in breakers]


_registry = CircuitBreakerRegistry()


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get the process-wide breaker for a dependency."""
    return _registry.get(name)


def get_registry() -> CircuitBreakerRegistry:
    return _registry
