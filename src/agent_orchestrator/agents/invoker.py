"""
The single call path from the orchestration core to an agent.

    with_retry( queue submission( circuit breaker( agent.execute ) ) )

Workflow steps, self-critique and discussion all invoke agents through
``AgentInvoker`` so they share retry, timeout and breaker semantics.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from ..errors import AgentExecutionError, ErrorContext, OrchestratorError
from ..processes.manager import ProcessManager
from ..resilience import CircuitBreakerRegistry
from ..retry import RetryCallback, RetryPolicy, with_retry
from .registry import AgentBinding, AgentResult

# Queue timeout = call timeout + grace; the breaker must observe the call
# timeout before the queue cancels the unit.
PROCESS_TIMEOUT_GRACE = 1.0


class AgentInvoker:
    def __init__(
        self,
        processes: ProcessManager,
        breakers: CircuitBreakerRegistry,
        *,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.processes = processes
        self.breakers = breakers
        self.default_retry = retry or RetryPolicy()

    async def invoke(
        self,
        binding: AgentBinding,
        input: Any,
        options: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
        priority: int | None = None,
        name: str | None = None,
        on_submit: Callable[[str, int], None] | None = None,
        on_retry: RetryCallback | None = None,
    ) -> Any:
        """Invoke an agent and return its result.

        Each attempt is its own process. ``on_submit(process_id, attempt)``
        is called as soon as an attempt is queued. Cancelling the caller
        cancels the attempt's process.

        Raises:
            AgentExecutionError: the agent failed on the last attempt
            CircuitBreakerOpenError: the service breaker is open
            CallTimeoutError: the last attempt exceeded ``timeout``
        """
        attempt = 0
        process_timeout = timeout + PROCESS_TIMEOUT_GRACE if timeout is not None else None

        async def run_attempt() -> Any:
            nonlocal attempt
            attempt += 1
            call_options = {**(options or {}), "attempt": attempt}

            async def unit() -> Any:
                return await self.breakers.call(
                    binding.service,
                    lambda: self._execute(binding, input, call_options),
                    timeout=timeout,
                )

            pid = await self.processes.submit(unit, priority=priority, timeout=process_timeout, name=name)
            if on_submit is not None:
                on_submit(pid, attempt)
            try:
                await self.processes.wait(pid)
            except asyncio.CancelledError:
                await self.processes.cancel(pid)
                raise
            return self.processes.result(pid)

        return await with_retry(retry or self.default_retry, run_attempt, on_retry=on_retry)

    @staticmethod
    async def _execute(binding: AgentBinding, input: Any, options: dict[str, Any]) -> Any:
        try:
            result = await binding.agent.execute(input, options)
        except OrchestratorError:
            raise
        except Exception as exc:
            raise AgentExecutionError(
                f"Agent '{binding.agent_id}' failed: {exc}",
                agent_id=binding.agent_id,
                context=ErrorContext(service=binding.service, attempt=options.get("attempt", 1)),
                cause=exc,
            ) from exc
        if isinstance(result, AgentResult) and not result.success:
            raise AgentExecutionError(
                f"Agent '{binding.agent_id}' reported failure: {result.error or 'unknown error'}",
                agent_id=binding.agent_id,
                context=ErrorContext(service=binding.service, attempt=options.get("attempt", 1)),
            )
        return result


__all__ = ["AgentInvoker", "PROCESS_TIMEOUT_GRACE"]
