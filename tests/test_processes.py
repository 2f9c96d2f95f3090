"""
Tests for the bounded execution queue.
"""

import asyncio

import pytest

from agent_orchestrator.config import QueueConfig
from agent_orchestrator.errors import (
    ConcurrencyLimitError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    OrchestrationTimeoutError,
    ValidationError,
)
from agent_orchestrator.events import InMemoryEventBus, OrchestrationEventType
from agent_orchestrator.processes import ProcessFilter, ProcessManager, ProcessRecord, ProcessStatus
from agent_orchestrator.storage import InMemoryKeyValueStore


def _value(value):
    async def unit():
        return value

    return unit


def _blocked(gate, value=None, log=None):
    async def unit():
        await gate.wait()
        if log is not None:
            log.append(value)
        return value

    return unit


class TestSubmission:
    """Test submit, wait and result."""

    @pytest.mark.asyncio
    async def test_runs_unit_to_completion(self):
        manager = ProcessManager()
        pid = await manager.submit(_value(42), name="answer")

        record = await manager.wait(pid, timeout=1)

        assert record.status == ProcessStatus.COMPLETED
        assert record.result == 42
        assert record.name == "answer"
        assert record.duration is not None
        assert manager.result(pid) == 42

    @pytest.mark.asyncio
    async def test_execute_returns_result(self):
        manager = ProcessManager()
        assert await manager.execute(_value("hello")) == "hello"

    @pytest.mark.asyncio
    async def test_failure_is_recorded_not_raised(self):
        async def broken():
            raise ValueError("bad data")

        manager = ProcessManager()
        pid = await manager.submit(broken)
        record = await manager.wait(pid, timeout=1)

        assert record.status == ProcessStatus.FAILED
        assert "bad data" in record.error
        with pytest.raises(ValueError, match="bad data"):
            manager.result(pid)

    @pytest.mark.asyncio
    async def test_rejects_invalid_priority_and_timeout(self):
        manager = ProcessManager()
        with pytest.raises(ValidationError):
            await manager.submit(_value(1), priority=101)
        with pytest.raises(ValidationError):
            await manager.submit(_value(1), timeout=0)

    @pytest.mark.asyncio
    async def test_unknown_process(self):
        manager = ProcessManager()
        assert await manager.status("missing") is None
        with pytest.raises(NotFoundError):
            await manager.wait("missing")
        with pytest.raises(NotFoundError):
            await manager.cancel("missing")


class TestConcurrencyCap:
    """Test the concurrency limit and the overflow queue."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrent(self):
        manager = ProcessManager(QueueConfig(max_concurrent=2))
        gate = asyncio.Event()
        pids = [await manager.submit(_blocked(gate, n)) for n in range(5)]

        assert manager.running_count == 2
        assert manager.queue_depth == 3
        statuses = [(await manager.status(pid)).status for pid in pids]
        assert statuses[:2] == [ProcessStatus.RUNNING, ProcessStatus.RUNNING]
        assert statuses[2:] == [ProcessStatus.QUEUED] * 3

        gate.set()
        records = [await manager.wait(pid, timeout=1) for pid in pids]
        assert [r.result for r in records] == [0, 1, 2, 3, 4]
        assert manager.running_count == 0

    @pytest.mark.asyncio
    async def test_queue_disabled_rejects_overflow(self):
        manager = ProcessManager(QueueConfig(max_concurrent=1, enable_queue=False))
        gate = asyncio.Event()
        await manager.submit(_blocked(gate))

        with pytest.raises(ConcurrencyLimitError) as exc_info:
            await manager.submit(_value(1))

        assert exc_info.value.code == ErrorCode.CONCURRENCY_LIMIT
        assert exc_info.value.retryable
        gate.set()
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_full_queue_rejects_overflow(self):
        manager = ProcessManager(QueueConfig(max_concurrent=1, max_queue_size=1))
        gate = asyncio.Event()
        await manager.submit(_blocked(gate))
        await manager.submit(_blocked(gate))

        with pytest.raises(ConcurrencyLimitError):
            await manager.submit(_value(1))
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_higher_priority_runs_first(self):
        manager = ProcessManager(QueueConfig(max_concurrent=1))
        gate = asyncio.Event()
        order = []
        blocker = await manager.submit(_blocked(gate))
        low = await manager.submit(_blocked(gate, "low", order), priority=10)
        high = await manager.submit(_blocked(gate, "high", order), priority=90)
        tie_a = await manager.submit(_blocked(gate, "mid-a", order), priority=50)
        tie_b = await manager.submit(_blocked(gate, "mid-b", order), priority=50)

        assert manager.queue_position(high) == 1
        assert manager.queue_position(low) == 4
        assert manager.queue_position(blocker) is None

        gate.set()
        for pid in (blocker, low, high, tie_a, tie_b):
            await manager.wait(pid, timeout=1)
        assert order == ["high", "mid-a", "mid-b", "low"]


class TestTimeoutsAndCancellation:
    """Test per-unit timeouts and cancellation."""

    @pytest.mark.asyncio
    async def test_timeout_marks_process(self):
        manager = ProcessManager()

        async def slow():
            await asyncio.sleep(10)

        pid = await manager.submit(slow, timeout=0.02)
        record = await manager.wait(pid, timeout=1)

        assert record.status == ProcessStatus.TIMEOUT
        assert record.error_code == ErrorCode.TIMEOUT.value
        with pytest.raises(OrchestrationTimeoutError):
            manager.result(pid)

    @pytest.mark.asyncio
    async def test_wait_timeout(self):
        manager = ProcessManager()
        gate = asyncio.Event()
        pid = await manager.submit(_blocked(gate))

        with pytest.raises(OrchestrationTimeoutError):
            await manager.wait(pid, timeout=0.01)
        gate.set()
        await manager.wait(pid, timeout=1)

    @pytest.mark.asyncio
    async def test_cancel_queued_process_never_runs(self):
        manager = ProcessManager(QueueConfig(max_concurrent=1))
        gate = asyncio.Event()
        ran = []
        first = await manager.submit(_blocked(gate))
        queued = await manager.submit(_blocked(gate, "queued", ran))

        assert await manager.cancel(queued) is True
        gate.set()
        await manager.wait(first, timeout=1)

        assert (await manager.status(queued)).status == ProcessStatus.CANCELLED
        assert ran == []
        assert await manager.cancel(queued) is False

    @pytest.mark.asyncio
    async def test_cancel_running_process_frees_slot(self):
        manager = ProcessManager(QueueConfig(max_concurrent=1))
        gate = asyncio.Event()
        running = await manager.submit(_blocked(gate))
        waiting = await manager.submit(_value("next"))
        await asyncio.sleep(0)

        assert await manager.cancel(running) is True
        record = await manager.wait(waiting, timeout=1)

        assert (await manager.status(running)).status == ProcessStatus.CANCELLED
        assert record.result == "next"

    @pytest.mark.asyncio
    async def test_shutdown_refuses_new_work(self):
        manager = ProcessManager()
        gate = asyncio.Event()
        pid = await manager.submit(_blocked(gate))

        await manager.shutdown()

        assert (await manager.status(pid)).status == ProcessStatus.CANCELLED
        with pytest.raises(InvalidStateError):
            await manager.submit(_value(1))


class TestPersistenceAndEvents:
    """Test store mirroring, reaping and lifecycle events."""

    @pytest.mark.asyncio
    async def test_other_instance_reads_status_from_store(self):
        store = InMemoryKeyValueStore()
        owner = ProcessManager(store=store)
        reader = ProcessManager(store=store)

        pid = await owner.submit(_value("shared"))
        await owner.wait(pid, timeout=1)
        await asyncio.sleep(0.01)
        record = await reader.status(pid)

        assert isinstance(record, ProcessRecord)
        assert record.status == ProcessStatus.COMPLETED
        assert record.result == "shared"
        assert (await reader.wait(pid)).status == ProcessStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reap_stale_fails_orphaned_records(self):
        store = InMemoryKeyValueStore()
        crashed = ProcessManager(store=store)
        reaper = ProcessManager(store=store)
        gate = asyncio.Event()
        pid = await crashed.submit(_blocked(gate))
        await asyncio.sleep(0.01)

        reaped = await reaper.reap_stale(older_than=0)

        assert reaped == [pid]
        record = await reaper.status(pid)
        assert record.status == ProcessStatus.FAILED
        assert record.error_code == ErrorCode.REAPED.value
        listed = await reaper.list(ProcessFilter(status=ProcessStatus.FAILED))
        assert [r.process_id for r in listed] == [pid]
        gate.set()
        await crashed.shutdown()

    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        bus = InMemoryEventBus()
        manager = ProcessManager(QueueConfig(max_concurrent=1), events=bus)
        gate = asyncio.Event()
        first = await manager.submit(_blocked(gate))
        second = await manager.submit(_value(2))
        gate.set()
        await manager.wait(first, timeout=1)
        await manager.wait(second, timeout=1)
        await asyncio.sleep(0.01)

        assert bus.events_of(OrchestrationEventType.PROCESS_QUEUED, second)
        assert bus.events_of(OrchestrationEventType.PROCESS_STARTED, second)
        completed = bus.events_of(OrchestrationEventType.PROCESS_COMPLETED)
        assert {e.source_id for e in completed} == {first, second}

    @pytest.mark.asyncio
    async def test_stats(self):
        manager = ProcessManager(QueueConfig(max_concurrent=3))
        await manager.execute(_value(1))
        stats = manager.stats()

        assert stats["max_concurrent"] == 3
        assert stats["by_status"] == {"completed": 1}
        assert stats["running"] == 0
