"""
Bounded execution queue.

The ProcessManager runs generic async units of work with:
- A concurrency cap (``max_concurrent`` units running at once)
- A priority queue for overflow (higher priority first, FIFO on ties)
- Per-unit timeouts (the unit is cancelled and marked ``timeout``)
- Lifecycle tracking mirrored into the durable keyed store

Unit failures never escape the manager: every exception is converted into
a terminal state and kept for ``result()`` callers.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import math
import time
import uuid
from typing import Any

from ..config.runtime import QueueConfig
from ..errors import (
    ConcurrencyLimitError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    OrchestrationTimeoutError,
    ProcessCancelledError,
    StorageError,
    ValidationError,
    error_code_of,
)
from ..events.bus import EventEmitter, EventSink
from ..events.types import OrchestrationEventType
from ..storage.base import InMemoryKeyValueStore, KeyValueStore
from ..telemetry import MetricRegistry
from .store import ProcessFilter, ProcessStore
from .types import ProcessRecord, ProcessStatus, ProcessUnit

logger = logging.getLogger(__name__)

_STATUS_EVENTS = {
    ProcessStatus.COMPLETED: OrchestrationEventType.PROCESS_COMPLETED,
    ProcessStatus.FAILED: OrchestrationEventType.PROCESS_FAILED,
    ProcessStatus.TIMEOUT: OrchestrationEventType.PROCESS_TIMEOUT,
    ProcessStatus.CANCELLED: OrchestrationEventType.PROCESS_CANCELLED,
}


class ProcessManager:
    """Priority-ordered unit-of-work scheduler with a concurrency cap.

    Example:
        ```python
        manager = ProcessManager(QueueConfig(max_concurrent=4))
        pid = await manager.submit(lambda: fetch(url), priority=80, timeout=10)
        record = await manager.wait(pid)
        ```
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        *,
        store: KeyValueStore | None = None,
        events: EventSink | None = None,
        metrics: MetricRegistry | None = None,
        instance_id: str | None = None,
    ) -> None:
        self.config = config or QueueConfig()
        self.instance_id = instance_id or uuid.uuid4().hex[:12]
        self._store = ProcessStore(
            store or InMemoryKeyValueStore(),
            prefix=self.config.key_prefix,
            retention=self.config.retention,
        )
        self._emitter = EventEmitter(events)
        self._metrics = metrics or MetricRegistry()

        self._records: dict[str, ProcessRecord] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._errors: dict[str, BaseException] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._queued: dict[str, ProcessUnit] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def running_count(self) -> int:
        return len(self._tasks)

    @property
    def queue_depth(self) -> int:
        return len(self._queued)

    @property
    def store(self) -> ProcessStore:
        return self._store

    def _update_gauges(self) -> None:
        self._metrics.set_gauge("process.running", self.running_count)
        self._metrics.set_gauge("process.queued", self.queue_depth)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        unit: ProcessUnit,
        *,
        priority: int | None = None,
        timeout: float | None = None,
        name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Submit a unit of work and return its process id.

        The unit starts immediately when a slot is free, otherwise it is
        queued by priority. ``timeout`` defaults to ``config.default_timeout``.

        Raises:
            ValidationError: priority outside 0..100
            ConcurrencyLimitError: no free slot and the queue is disabled or full
            InvalidStateError: the manager has been shut down
        """
        if self._closed:
            raise InvalidStateError("ProcessManager is shut down")
        priority = self.config.default_priority if priority is None else priority
        if not 0 <= priority <= 100:
            raise ValidationError(f"Process priority must be between 0 and 100, got {priority}")
        if timeout is not None and timeout <= 0:
            raise ValidationError(f"Process timeout must be positive, got {timeout}")

        self._evict_expired()

        has_slot = self.running_count < self.config.max_concurrent
        if not has_slot:
            if not self.config.enable_queue:
                self._metrics.inc("process.rejected")
                raise ConcurrencyLimitError(
                    f"All {self.config.max_concurrent} slots are busy and queueing is disabled",
                    limit=self.config.max_concurrent,
                )
            if self.queue_depth >= self.config.max_queue_size:
                self._metrics.inc("process.rejected")
                raise ConcurrencyLimitError(
                    f"Execution queue is full ({self.config.max_queue_size} queued, "
                    f"{self.config.max_concurrent} running)",
                    limit=self.config.max_concurrent + self.config.max_queue_size,
                )

        record = ProcessRecord(
            name=name,
            priority=priority,
            timeout=timeout if timeout is not None else self.config.default_timeout,
            metadata=dict(metadata or {}),
        )
        pid = record.process_id
        self._records[pid] = record
        self._done[pid] = asyncio.Event()
        self._metrics.inc("process.submitted")

        if has_slot:
            self._start(pid, unit)
            return pid

        record = record.transition_to(ProcessStatus.QUEUED)
        self._records[pid] = record
        self._queued[pid] = unit
        heapq.heappush(self._heap, (-priority, next(self._sequence), pid))
        self._update_gauges()
        logger.debug(f"Process {pid} queued (priority={priority}, depth={self.queue_depth})")
        await self._persist(record)
        await self._emitter.emit(
            OrchestrationEventType.PROCESS_QUEUED,
            pid,
            name=name,
            priority=priority,
            position=self.queue_position(pid),
        )
        return pid

    def _start(self, pid: str, unit: ProcessUnit) -> None:
        record = self._records[pid].transition_to(ProcessStatus.RUNNING, owner_id=self.instance_id)
        self._records[pid] = record
        self._metrics.observe("process.wait_time", (record.started_at or record.created_at) - record.created_at)
        task = asyncio.create_task(self._run(pid, unit), name=f"process:{pid}")
        task.add_done_callback(lambda _t, pid=pid: self._on_task_done(pid))
        self._tasks[pid] = task
        self._update_gauges()

    def _on_task_done(self, pid: str) -> None:
        # Normally _finish has already released the slot. A task cancelled
        # before reaching _finish lands here instead.
        if self._tasks.pop(pid, None) is None:
            return
        if not self._records[pid].status.is_terminal:
            self._complete_record(
                pid, ProcessStatus.CANCELLED, None, ProcessCancelledError(f"Process {pid} cancelled")
            )
        self._drain()

    def _drain(self) -> None:
        """Start queued units while slots are free."""
        while self._heap and self.running_count < self.config.max_concurrent and not self._closed:
            _, _, pid = heapq.heappop(self._heap)
            unit = self._queued.pop(pid, None)
            if unit is None:
                continue  # cancelled while queued
            self._start(pid, unit)
        self._update_gauges()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, pid: str, unit: ProcessUnit) -> None:
        record = self._records[pid]
        await self._persist(record)
        await self._emitter.emit(
            OrchestrationEventType.PROCESS_STARTED,
            pid,
            name=record.name,
            priority=record.priority,
        )

        status = ProcessStatus.COMPLETED
        result: Any = None
        error: BaseException | None = None
        try:
            if record.timeout is not None:
                result = await asyncio.wait_for(unit(), timeout=record.timeout)
            else:
                result = await unit()
        except asyncio.TimeoutError as exc:
            status = ProcessStatus.TIMEOUT
            error = OrchestrationTimeoutError(
                f"Process {pid} exceeded {record.timeout}s",
                timeout=record.timeout,
                cause=exc,
            )
        except asyncio.CancelledError:
            status = ProcessStatus.CANCELLED
            error = ProcessCancelledError(f"Process {pid} cancelled")
        except OrchestrationTimeoutError as exc:
            status = ProcessStatus.TIMEOUT
            error = exc
        except Exception as exc:
            status = ProcessStatus.FAILED
            error = exc
        await self._finish(pid, status, result, error)

    async def _finish(
        self,
        pid: str,
        status: ProcessStatus,
        result: Any,
        error: BaseException | None,
    ) -> None:
        self._tasks.pop(pid, None)
        record = self._records[pid]
        changed = not record.status.is_terminal
        if changed:
            record = self._complete_record(pid, status, result, error)
        self._drain()
        if changed:
            await self._publish_terminal(record)

    def _complete_record(
        self,
        pid: str,
        status: ProcessStatus,
        result: Any,
        error: BaseException | None,
    ) -> ProcessRecord:
        updates: dict[str, Any] = {}
        if error is not None:
            self._errors[pid] = error
            updates["error"] = str(error)
            updates["error_code"] = error_code_of(error).value
        else:
            updates["result"] = result
        record = self._records[pid].transition_to(status, **updates)
        self._records[pid] = record
        self._done[pid].set()

        self._metrics.inc(f"process.{status.value}")
        if error is not None:
            self._metrics.inc(f"errors.{error_code_of(error).value}")
        if record.duration is not None:
            self._metrics.observe("process.duration", record.duration)

        if status == ProcessStatus.FAILED:
            logger.warning(f"Process {pid} failed: {record.error}")
        else:
            logger.debug(f"Process {pid} -> {status.value}")
        return record

    async def _publish_terminal(self, record: ProcessRecord) -> None:
        await self._persist(record)
        await self._emitter.emit(
            _STATUS_EVENTS[record.status],
            record.process_id,
            name=record.name,
            duration=record.duration,
            error=record.error,
            error_code=record.error_code,
        )

    async def _persist(self, record: ProcessRecord) -> None:
        try:
            await self._store.save(record)
        except StorageError as exc:
            logger.warning(f"Could not persist process {record.process_id}: {exc}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def status(self, process_id: str) -> ProcessRecord | None:
        """Current record, from this instance or the shared store."""
        record = self._records.get(process_id)
        if record is not None:
            return record
        return await self._store.get(process_id)

    async def wait(self, process_id: str, timeout: float | None = None) -> ProcessRecord:
        """Wait until the process reaches a terminal state.

        Raises:
            NotFoundError: unknown process
            OrchestrationTimeoutError: ``timeout`` elapsed first
        """
        done = self._done.get(process_id)
        if done is None:
            record = await self._store.get(process_id)
            if record is None:
                raise NotFoundError("Process", process_id)
            if record.status.is_terminal:
                return record
            raise InvalidStateError(f"Process {process_id} is owned by instance {record.owner_id}")
        try:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OrchestrationTimeoutError(
                f"Timed out waiting for process {process_id}", timeout=timeout, cause=exc
            ) from exc
        return self._records[process_id]

    def result(self, process_id: str) -> Any:
        """Return the unit's result or raise the error it ended with."""
        record = self._records.get(process_id)
        if record is None:
            raise NotFoundError("Process", process_id)
        if record.status == ProcessStatus.COMPLETED:
            return record.result
        if not record.status.is_terminal:
            raise InvalidStateError(f"Process {process_id} is still {record.status.value}")
        raise self._errors[process_id]

    async def execute(
        self,
        unit: ProcessUnit,
        *,
        priority: int | None = None,
        timeout: float | None = None,
        name: str | None = None,
    ) -> Any:
        """Submit, wait and return the result. Cancelling the caller cancels the process."""
        pid = await self.submit(unit, priority=priority, timeout=timeout, name=name)
        try:
            await self.wait(pid)
        except asyncio.CancelledError:
            await self.cancel(pid)
            raise
        return self.result(pid)

    def queue_position(self, process_id: str) -> int | None:
        """1-based position among queued processes, or None if not queued."""
        if process_id not in self._queued:
            return None
        ordered = sorted(entry for entry in self._heap if entry[2] in self._queued)
        for index, (_, _, pid) in enumerate(ordered, start=1):
            if pid == process_id:
                return index
        return None

    def estimated_wait(self, process_id: str) -> float | None:
        """Rough seconds until a queued process starts, from the mean run duration."""
        position = self.queue_position(process_id)
        if position is None:
            return None
        mean = self._metrics.histogram("process.duration").mean
        if mean <= 0:
            return None
        return math.ceil(position / self.config.max_concurrent) * mean

    def active(self) -> list[ProcessRecord]:
        return [r for r in self._records.values() if r.status.is_active]

    async def list(self, filter: ProcessFilter | None = None) -> list[ProcessRecord]:
        return await self._store.list(filter)

    def stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for record in self._records.values():
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        duration = self._metrics.histogram("process.duration")
        return {
            "running": self.running_count,
            "queued": self.queue_depth,
            "max_concurrent": self.config.max_concurrent,
            "max_queue_size": self.config.max_queue_size,
            "tracked": len(self._records),
            "by_status": counts,
            "duration": {"mean": duration.mean, **duration.percentiles()},
        }

    # ------------------------------------------------------------------
    # Cancellation and maintenance
    # ------------------------------------------------------------------

    async def cancel(self, process_id: str) -> bool:
        """Cancel a pending, queued or running process.

        Returns False if the process already finished. A running unit is
        signalled through task cancellation; the slot frees once it stops.
        """
        record = self._records.get(process_id)
        if record is None:
            stored = await self._store.get(process_id)
            if stored is None:
                raise NotFoundError("Process", process_id)
            if stored.status.is_terminal:
                return False
            raise InvalidStateError(f"Process {process_id} is owned by instance {stored.owner_id}")
        if record.status.is_terminal:
            return False

        self._queued.pop(process_id, None)
        record = self._complete_record(
            process_id,
            ProcessStatus.CANCELLED,
            None,
            ProcessCancelledError(f"Process {process_id} cancelled"),
        )
        task = self._tasks.get(process_id)
        if task is not None:
            task.cancel()
        self._update_gauges()
        await self._publish_terminal(record)
        return True

    async def reap_stale(self, older_than: float) -> list[str]:
        """Fail stored ``running`` records that no live unit backs.

        This is the external-reaper hook: after an instance crash its units
        stay ``running`` in the shared store until something calls this.
        """
        cutoff = time.time() - older_than
        reaped: list[str] = []
        for record in await self._store.list(ProcessFilter(status=ProcessStatus.RUNNING, limit=10_000)):
            if record.process_id in self._tasks:
                continue
            if (record.started_at or record.created_at) > cutoff:
                continue
            failed = record.transition_to(
                ProcessStatus.FAILED,
                error="Process reaped: no live owner",
                error_code=ErrorCode.REAPED.value,
            )
            await self._persist(failed)
            await self._emitter.emit(
                OrchestrationEventType.PROCESS_FAILED,
                failed.process_id,
                name=failed.name,
                error=failed.error,
                error_code=failed.error_code,
            )
            self._metrics.inc("process.reaped")
            reaped.append(failed.process_id)
        if reaped:
            logger.warning(f"Reaped {len(reaped)} stale process(es)")
        return reaped

    def _evict_expired(self) -> None:
        cutoff = time.time() - self.config.retention
        expired = [
            pid
            for pid, record in self._records.items()
            if record.status.is_terminal and (record.completed_at or 0.0) < cutoff
        ]
        for pid in expired:
            self._records.pop(pid, None)
            self._done.pop(pid, None)
            self._errors.pop(pid, None)

    async def shutdown(self, *, cancel_running: bool = True) -> None:
        """Stop accepting work, cancel queued units and optionally running ones."""
        self._closed = True
        for pid in list(self._queued):
            await self.cancel(pid)
        tasks = list(self._tasks.values())
        if cancel_running:
            for pid in list(self._tasks):
                await self.cancel(pid)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["ProcessManager"]
