"""
Tests for the circuit breaker and breaker registry.
"""

import asyncio

import pytest

from agent_orchestrator.errors import CallTimeoutError, CircuitBreakerOpenError
from agent_orchestrator.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)


async def _ok():
    return "ok"


async def _down():
    raise RuntimeError("service down")


async def _fail_times(breaker, count):
    for _ in range(count):
        with pytest.raises(RuntimeError):
            await breaker.call(_down)


class TestCircuitBreakerConfig:
    """Test breaker configuration validation."""

    def test_defaults(self):
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.reset_timeout == 60.0
        assert config.success_threshold == 2
        assert config.half_open_max_calls == 1

    def test_validation(self):
        with pytest.raises(ValueError, match="failure_threshold"):
            CircuitBreakerConfig(failure_threshold=0)
        with pytest.raises(ValueError, match="call_timeout"):
            CircuitBreakerConfig(call_timeout=0)


class TestClosedState:
    """Test behavior while the breaker is closed."""

    @pytest.mark.asyncio
    async def test_passes_calls_through(self):
        breaker = CircuitBreaker("search")
        assert await breaker.call(_ok) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.total_calls == 1
        assert breaker.total_successes == 1

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, clock):
        breaker = CircuitBreaker("search", CircuitBreakerConfig(failure_threshold=3, reset_timeout=10), clock=clock)
        await _fail_times(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        await _fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, clock):
        breaker = CircuitBreaker("search", CircuitBreakerConfig(failure_threshold=3), clock=clock)
        await _fail_times(breaker, 2)
        await breaker.call(_ok)
        assert breaker.consecutive_failures == 0
        await _fail_times(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_ignored_errors_do_not_count(self):
        breaker = CircuitBreaker(
            "search",
            CircuitBreakerConfig(failure_threshold=1),
            is_failure=lambda exc: not isinstance(exc, ValueError),
        )

        async def bad_input():
            raise ValueError("caller error")

        with pytest.raises(ValueError):
            await breaker.call(bad_input)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.total_failures == 0

    @pytest.mark.asyncio
    async def test_call_timeout_counts_as_failure(self):
        breaker = CircuitBreaker("slow", CircuitBreakerConfig(failure_threshold=1))

        async def hang():
            await asyncio.sleep(10)

        with pytest.raises(CallTimeoutError) as exc_info:
            await breaker.call(hang, timeout=0.01)

        assert exc_info.value.timeout == 0.01
        assert breaker.total_timeouts == 1
        assert breaker.state == CircuitState.OPEN


class TestOpenState:
    """Test rejection and recovery."""

    @pytest.mark.asyncio
    async def test_rejects_while_open(self, clock):
        breaker = CircuitBreaker("search", CircuitBreakerConfig(failure_threshold=1, reset_timeout=30), clock=clock)
        await _fail_times(breaker, 1)
        clock.advance(5)

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.call(_ok)

        assert exc_info.value.service == "search"
        assert exc_info.value.retry_after == pytest.approx(25.0)
        assert breaker.total_rejections == 1

    @pytest.mark.asyncio
    async def test_reports_half_open_after_reset_timeout(self, clock):
        breaker = CircuitBreaker("search", CircuitBreakerConfig(failure_threshold=1, reset_timeout=30), clock=clock)
        await _fail_times(breaker, 1)
        clock.advance(30)
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_closes_after_success_threshold(self, clock):
        breaker = CircuitBreaker(
            "search",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=10, success_threshold=2),
            clock=clock,
        )
        await _fail_times(breaker, 1)
        clock.advance(10)

        await breaker.call(_ok)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.call(_ok)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        breaker = CircuitBreaker("search", CircuitBreakerConfig(failure_threshold=1, reset_timeout=10), clock=clock)
        await _fail_times(breaker, 1)
        clock.advance(10)

        await _fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.retry_after() == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_half_open_limits_trial_calls(self, clock):
        breaker = CircuitBreaker(
            "search",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=10, half_open_max_calls=1),
            clock=clock,
        )
        await _fail_times(breaker, 1)
        clock.advance(10)

        gate = asyncio.Event()

        async def trial():
            await gate.wait()
            return "ok"

        first = asyncio.create_task(breaker.call(trial))
        await asyncio.sleep(0.01)
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(_ok)

        gate.set()
        assert await first == "ok"


class TestManualControl:
    """Test listeners and manual state changes."""

    @pytest.mark.asyncio
    async def test_listener_sees_transitions(self, clock):
        breaker = CircuitBreaker(
            "search",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=10, success_threshold=1),
            clock=clock,
        )
        seen = []

        async def listener(name, old, new):
            seen.append((name, old, new))

        breaker.add_listener(listener)
        await _fail_times(breaker, 1)
        clock.advance(10)
        await breaker.call(_ok)

        assert seen == [
            ("search", CircuitState.CLOSED, CircuitState.OPEN),
            ("search", CircuitState.OPEN, CircuitState.HALF_OPEN),
            ("search", CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_calls(self):
        breaker = CircuitBreaker("search", CircuitBreakerConfig(failure_threshold=1))

        async def broken(name, old, new):
            raise RuntimeError("listener bug")

        breaker.add_listener(broken)
        await _fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_force_open_and_reset(self):
        breaker = CircuitBreaker("search")
        await breaker.call(_ok)
        await breaker.force_open()
        assert breaker.state == CircuitState.OPEN

        await breaker.reset()
        metrics = breaker.metrics()
        assert metrics["state"] == "closed"
        assert metrics["total_calls"] == 0


class TestCircuitBreakerRegistry:
    """Test the breaker registry."""

    @pytest.mark.asyncio
    async def test_one_breaker_per_service(self):
        registry = CircuitBreakerRegistry()
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        assert registry.names() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_breakers_are_isolated(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        with pytest.raises(RuntimeError):
            await registry.call("a", _down)

        assert registry.get("a").state == CircuitState.OPEN
        assert await registry.call("b", _ok) == "ok"

    def test_per_service_override(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=5))
        registry.configure("fragile", CircuitBreakerConfig(failure_threshold=1))
        assert registry.get("fragile").config.failure_threshold == 1
        assert registry.get("sturdy").config.failure_threshold == 5

    @pytest.mark.asyncio
    async def test_registry_listener_reaches_every_breaker(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        registry.get("existing")
        opened = []

        async def listener(name, old, new):
            opened.append(name)

        registry.add_listener(listener)
        for name in ("existing", "later"):
            with pytest.raises(RuntimeError):
                await registry.call(name, _down)

        assert opened == ["existing", "later"]

    @pytest.mark.asyncio
    async def test_snapshot_and_close(self):
        registry = CircuitBreakerRegistry()
        await registry.call("a", _ok)
        assert registry.snapshot()["a"]["total_successes"] == 1

        await registry.close()
        with pytest.raises(RuntimeError):
            registry.get("a")
