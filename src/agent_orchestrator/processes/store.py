"""
Process persistence on top of the durable keyed store.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..storage.base import KeyValueStore
from .types import ProcessRecord, ProcessStatus


@dataclass
class ProcessFilter:
    """Filter criteria for listing processes."""

    status: ProcessStatus | set[ProcessStatus] | None = None
    owner_id: str | None = None
    name_prefix: str | None = None
    limit: int = 100

    def matches(self, record: ProcessRecord) -> bool:
        if self.owner_id and record.owner_id != self.owner_id:
            return False
        if self.name_prefix and not (record.name or "").startswith(self.name_prefix):
            return False
        if self.status:
            if isinstance(self.status, set):
                if record.status not in self.status:
                    return False
            elif record.status != self.status:
                return False
        return True


class ProcessStore:
    """Reads and writes ``ProcessRecord`` values under ``<prefix><process_id>``.

    Every write refreshes the retention TTL, so terminal records disappear
    on their own once the retention window has passed.
    """

    def __init__(self, backend: KeyValueStore, *, prefix: str = "process:", retention: float = 86400.0) -> None:
        self.backend = backend
        self.prefix = prefix
        self.retention = retention

    def _key(self, process_id: str) -> str:
        return f"{self.prefix}{process_id}"

    async def save(self, record: ProcessRecord) -> None:
        await self.backend.set(self._key(record.process_id), record.to_dict(), ttl=self.retention)

    async def get(self, process_id: str) -> ProcessRecord | None:
        data = await self.backend.get(self._key(process_id))
        return ProcessRecord.from_dict(data) if data is not None else None

    async def delete(self, process_id: str) -> bool:
        return await self.backend.delete(self._key(process_id))

    async def list(self, filter: ProcessFilter | None = None) -> list[ProcessRecord]:
        filter = filter or ProcessFilter()
        records: list[ProcessRecord] = []
        for key in await self.backend.scan(self.prefix):
            data = await self.backend.get(key)
            if data is None:
                continue
            record = ProcessRecord.from_dict(data)
            if filter.matches(record):
                records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records[: filter.limit]


__all__ = ["ProcessFilter", "ProcessStore"]
