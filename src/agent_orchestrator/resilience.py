"""
Resilience primitives (circuit breaker and breaker registry).

One breaker exists per logical service name. Breakers live in an explicit
``CircuitBreakerRegistry`` that is constructed by the runtime, shared by every
workflow, self-critique and discussion calling the same service, and torn
down with ``close()``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .errors import CallTimeoutError, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[str, "CircuitState", "CircuitState"], Awaitable[None]]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 2
    call_timeout: float | None = 30.0
    half_open_max_calls: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be non-negative")
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ValueError("call_timeout must be positive")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")


class CircuitBreaker:
    """
    Three-state breaker guarding calls to one service.

    closed: calls pass; ``failure_threshold`` consecutive failures open it.
    open: calls are rejected with ``CircuitBreakerOpenError`` until
        ``reset_timeout`` has elapsed, then the breaker moves to half_open.
    half_open: up to ``half_open_max_calls`` trial calls in flight;
        ``success_threshold`` consecutive successes close it, any failure
        reopens it.

    Every call also carries its own timeout; exceeding it counts as a failure.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        is_failure: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._is_failure = is_failure
        self._clock = clock
        self._lock = asyncio.Lock()
        self._listeners: list[StateListener] = []

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._half_open_in_flight = 0
        self._opened_at = 0.0
        self._last_transition = clock()
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

        self.total_calls = 0
        self.total_successes = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_timeouts = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state, reporting half_open once the reset timeout has elapsed."""
        if self._state == CircuitState.OPEN and self._reset_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def consecutive_successes(self) -> int:
        return self._consecutive_successes

    def _reset_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.config.reset_timeout

    def add_listener(self, listener: StateListener) -> None:
        """Register an async callback invoked with (name, old_state, new_state)."""
        self._listeners.append(listener)

    def _transition(self, new_state: CircuitState) -> tuple[CircuitState, CircuitState] | None:
        # Caller holds the lock.
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        self._last_transition = self._clock()
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._half_open_in_flight = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._last_transition
        logger.info(f"Circuit breaker '{self.name}' {old_state.value} -> {new_state.value}")
        return old_state, new_state

    async def _notify(self, change: tuple[CircuitState, CircuitState] | None) -> None:
        if change is None:
            return
        for listener in list(self._listeners):
            try:
                await listener(self.name, change[0], change[1])
            except Exception:
                logger.exception(f"Circuit breaker listener failed for '{self.name}'")

    # ------------------------------------------------------------------
    # Call protocol
    # ------------------------------------------------------------------

    async def allow(self) -> bool:
        """Reserve permission for one call. Pair with on_success/on_failure."""
        async with self._lock:
            change = None
            if self._state == CircuitState.OPEN:
                if not self._reset_elapsed():
                    self.total_rejections += 1
                    return False
                change = self._transition(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    self.total_rejections += 1
                    allowed = False
                else:
                    self._half_open_in_flight += 1
                    allowed = True
            else:
                allowed = True

            if allowed:
                self.total_calls += 1
        await self._notify(change)
        return allowed

    async def on_success(self) -> None:
        async with self._lock:
            change = None
            self.total_successes += 1
            self._last_success_at = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._consecutive_successes += 1
                if self._consecutive_successes >= self.config.success_threshold:
                    change = self._transition(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0
                self._consecutive_successes += 1
        await self._notify(change)

    async def on_failure(self) -> None:
        async with self._lock:
            change = None
            self.total_failures += 1
            self._last_failure_at = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                change = self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._consecutive_successes = 0
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.config.failure_threshold:
                    change = self._transition(CircuitState.OPEN)
        await self._notify(change)

    async def _release(self) -> None:
        # A call that ended without an outcome (cancelled) frees its half-open slot.
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """
        Run ``fn`` through the breaker.

        Raises:
            CircuitBreakerOpenError: the breaker rejected the call
            CallTimeoutError: the call exceeded its timeout (counted as failure)
        """
        if not await self.allow():
            raise CircuitBreakerOpenError(self.name, retry_after=self.retry_after())

        call_timeout = timeout if timeout is not None else self.config.call_timeout
        try:
            if call_timeout is not None:
                result = await asyncio.wait_for(fn(), timeout=call_timeout)
            else:
                result = await fn()
        except asyncio.TimeoutError as exc:
            self.total_timeouts += 1
            await self.on_failure()
            raise CallTimeoutError(
                f"Call to '{self.name}' exceeded {call_timeout}s",
                timeout=call_timeout,
                cause=exc,
            ) from exc
        except asyncio.CancelledError:
            await self._release()
            raise
        except Exception as exc:
            if self._is_failure is None or self._is_failure(exc):
                await self.on_failure()
            else:
                await self.on_success()
            raise
        await self.on_success()
        return result

    def retry_after(self) -> float | None:
        if self._state != CircuitState.OPEN:
            return None
        return max(0.0, self.config.reset_timeout - (self._clock() - self._opened_at))

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    async def force_open(self) -> None:
        async with self._lock:
            change = self._transition(CircuitState.OPEN)
        await self._notify(change)

    async def force_close(self) -> None:
        async with self._lock:
            change = self._transition(CircuitState.CLOSED)
        await self._notify(change)

    async def reset(self) -> None:
        """Close the breaker and clear every counter."""
        async with self._lock:
            change = self._transition(CircuitState.CLOSED)
            self.total_calls = 0
            self.total_successes = 0
            self.total_failures = 0
            self.total_rejections = 0
            self.total_timeouts = 0
            self._last_failure_at = None
            self._last_success_at = None
        await self._notify(change)

    def metrics(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "consecutive_successes": self._consecutive_successes,
            "total_calls": self.total_calls,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "total_timeouts": self.total_timeouts,
            "last_transition": self._last_transition,
            "last_failure_at": self._last_failure_at,
            "last_success_at": self._last_success_at,
        }


class CircuitBreakerRegistry:
    """Explicit owner of all breakers, keyed by service name."""

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        *,
        overrides: dict[str, CircuitBreakerConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_config = default_config or CircuitBreakerConfig()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[StateListener] = []
        self._closed = False

    def configure(self, name: str, config: CircuitBreakerConfig) -> None:
        """Set the config used when the breaker for ``name`` is first created."""
        self._overrides[name] = config

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)
        for breaker in self._breakers.values():
            breaker.add_listener(listener)

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for a service."""
        if self._closed:
            raise RuntimeError("CircuitBreakerRegistry is closed")
        breaker = self._breakers.get(name)
        if breaker is None:
            config = self._overrides.get(name, self.default_config)
            breaker = CircuitBreaker(name, config, clock=self._clock)
            for listener in self._listeners:
                breaker.add_listener(listener)
            self._breakers[name] = breaker
        return breaker

    async def call(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        return await self.get(name).call(fn, timeout=timeout)

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.metrics() for name, breaker in sorted(self._breakers.items())}

    async def reset_all(self) -> None:
        for breaker in list(self._breakers.values()):
            await breaker.reset()

    async def close(self) -> None:
        """Tear down the registry. Further ``get`` calls fail."""
        self._breakers.clear()
        self._listeners.clear()
        self._closed = True


__all__ = [
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
