"""
Workflow context store.

Each workflow gets one context: a nested key/value tree addressed by dot
paths (``draft.output.text``). Writes follow a single-writer discipline:
a path claimed by a step may only be written by that step, so concurrent
steps never race on the same key. Contexts expire after a TTL and are
mirrored into the keyed store so other instances can read them.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..config.runtime import ContextConfig
from ..errors import ContextOwnershipError, NotFoundError, StorageError, ValidationError
from ..storage.base import InMemoryKeyValueStore, KeyValueStore
from ..templating import (
    delete_path,
    depth_of,
    get_path,
    paths_overlap,
    render_template,
    set_path,
    split_path,
)

logger = logging.getLogger(__name__)


@dataclass
class ContextSnapshot:
    snapshot_id: str
    data: dict[str, Any]
    created_at: float
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "data": self.data,
            "created_at": self.created_at,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextSnapshot:
        return cls(
            snapshot_id=data["snapshot_id"],
            data=data.get("data", {}),
            created_at=data.get("created_at", 0.0),
            label=data.get("label"),
        )


@dataclass
class WorkflowContext:
    """Context data for one workflow plus its ownership claims and snapshots."""

    workflow_id: str
    data: dict[str, Any] = field(default_factory=dict)
    owners: dict[str, str] = field(default_factory=dict)
    snapshots: list[ContextSnapshot] = field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0
    expires_at: float | None = None

    def owner_of(self, path: str) -> str | None:
        for claimed, owner in self.owners.items():
            if paths_overlap(claimed, path):
                return owner
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "data": self.data,
            "owners": dict(self.owners),
            "snapshots": [s.to_dict() for s in self.snapshots],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowContext:
        return cls(
            workflow_id=data["workflow_id"],
            data=data.get("data", {}),
            owners=dict(data.get("owners", {})),
            snapshots=[ContextSnapshot.from_dict(s) for s in data.get("snapshots", [])],
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            expires_at=data.get("expires_at"),
        )


def _deep_merge(target: dict[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class WorkflowContextStore:
    """Per-workflow shared state with path access, ownership, snapshots and TTL.

    Example:
        ```python
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"topic": "caching"})
        await contexts.claim("wf-1", "draft", owner="draft")
        await contexts.set("wf-1", "draft.output", "...", writer="draft")
        text = await contexts.resolve_template("wf-1", "Review: {{ draft.output }}")
        ```
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        store: KeyValueStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ContextConfig()
        self._store = store or InMemoryKeyValueStore()
        self._clock = clock
        self._contexts: dict[str, WorkflowContext] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _key(self, workflow_id: str) -> str:
        return f"{self.config.key_prefix}{workflow_id}"

    def _lock(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = self._locks[workflow_id] = asyncio.Lock()
        return lock

    def _check_depth(self, path: str, value: Any) -> None:
        depth = len(split_path(path)) + depth_of(value)
        if depth > self.config.max_nesting_depth:
            raise ValidationError(
                f"Value at '{path}' is nested {depth} levels deep; "
                f"the limit is {self.config.max_nesting_depth}"
            )

    async def _persist(self, context: WorkflowContext) -> None:
        ttl = None
        if context.expires_at is not None:
            ttl = max(context.expires_at - self._clock(), 0.001)
        try:
            await self._store.set(self._key(context.workflow_id), context.to_dict(), ttl=ttl)
        except StorageError as exc:
            logger.warning(f"Could not persist context {context.workflow_id}: {exc}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        workflow_id: str,
        initial: Mapping[str, Any] | None = None,
        *,
        ttl: float | None = None,
        hold: bool = False,
    ) -> WorkflowContext:
        """Create a context. Raises ValidationError if one already exists.

        A held context never expires until :meth:`release` starts its TTL.
        """
        if workflow_id in self._contexts and not self._expired(self._contexts[workflow_id]):
            raise ValidationError(f"Context for workflow '{workflow_id}' already exists")
        data = copy.deepcopy(dict(initial or {}))
        if depth_of(data) > self.config.max_nesting_depth:
            raise ValidationError(
                f"Initial context is nested deeper than {self.config.max_nesting_depth} levels"
            )
        now = self._clock()
        context = WorkflowContext(
            workflow_id=workflow_id,
            data=data,
            created_at=now,
            updated_at=now,
            expires_at=None if hold else now + (ttl or self.config.default_ttl),
        )
        self._contexts[workflow_id] = context
        await self._persist(context)
        logger.debug(f"Created context for workflow {workflow_id}")
        return context

    def _expired(self, context: WorkflowContext) -> bool:
        return context.expires_at is not None and context.expires_at <= self._clock()

    async def get_context(self, workflow_id: str) -> WorkflowContext:
        """Load a context from this instance or the shared store.

        Raises:
            NotFoundError: unknown or expired context
        """
        context = self._contexts.get(workflow_id)
        if context is None:
            stored = await self._store.get(self._key(workflow_id))
            # Contexts owned by another instance are read fresh every time
            if stored is not None:
                context = WorkflowContext.from_dict(stored)
        if context is None:
            raise NotFoundError("Context", workflow_id)
        if self._expired(context):
            self._contexts.pop(workflow_id, None)
            self._locks.pop(workflow_id, None)
            raise NotFoundError("Context", workflow_id)
        return context

    async def exists(self, workflow_id: str) -> bool:
        try:
            await self.get_context(workflow_id)
        except NotFoundError:
            return False
        return True

    async def delete(self, workflow_id: str) -> bool:
        found = self._contexts.pop(workflow_id, None) is not None
        self._locks.pop(workflow_id, None)
        found = await self._store.delete(self._key(workflow_id)) or found
        return found

    async def extend_ttl(self, workflow_id: str, ttl: float) -> float:
        """Push the expiry ``ttl`` seconds into the future. Returns the new expiry."""
        if ttl <= 0:
            raise ValidationError("ttl must be positive")
        context = await self.get_context(workflow_id)
        async with self._lock(workflow_id):
            context.expires_at = self._clock() + ttl
            await self._persist(context)
        return context.expires_at

    async def release(self, workflow_id: str, ttl: float | None = None) -> float | None:
        """Start the expiry clock of a held context. Returns the new expiry, or None if it is gone."""
        try:
            return await self.extend_ttl(workflow_id, ttl or self.config.default_ttl)
        except NotFoundError:
            logger.debug(f"Context {workflow_id} already gone on release")
            return None

    def cleanup_expired(self) -> int:
        """Drop expired contexts held by this instance."""
        expired = [wid for wid, ctx in self._contexts.items() if self._expired(ctx)]
        for wid in expired:
            self._contexts.pop(wid, None)
            self._locks.pop(wid, None)
        return len(expired)

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    async def claim(self, workflow_id: str, path: str, owner: str) -> None:
        """Make ``owner`` the single writer of ``path`` and everything beneath it.

        Raises:
            ContextOwnershipError: another owner already claims an overlapping path
        """
        split_path(path)
        context = await self.get_context(workflow_id)
        current = context.owner_of(path)
        if current is not None and current != owner:
            raise ContextOwnershipError(path, current, owner)
        async with self._lock(workflow_id):
            context.owners[path] = owner
            await self._persist(context)

    async def owner_of(self, workflow_id: str, path: str) -> str | None:
        return (await self.get_context(workflow_id)).owner_of(path)

    def _check_writer(self, context: WorkflowContext, path: str, writer: str | None) -> None:
        owner = context.owner_of(path)
        if owner is not None and owner != writer:
            raise ContextOwnershipError(path, owner, writer)
        if writer is not None and owner is None:
            raise ContextOwnershipError(path, None, writer)

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    async def get(self, workflow_id: str, path: str | None = None, default: Any = None) -> Any:
        """Read a value by dot path (or the whole tree). Returns a copy."""
        context = await self.get_context(workflow_id)
        if path is None:
            return copy.deepcopy(context.data)
        return copy.deepcopy(get_path(context.data, path, default))

    async def data(self, workflow_id: str) -> dict[str, Any]:
        return await self.get(workflow_id)

    async def set(self, workflow_id: str, path: str, value: Any, *, writer: str | None = None) -> None:
        """Write a value at ``path``.

        A step passes its id as ``writer`` and may only write paths it has
        claimed. Callers outside any step (``writer=None``) may only write
        unclaimed paths.

        Raises:
            ContextOwnershipError: the path is owned by someone else
            ValidationError: the value would exceed the nesting limit
        """
        context = await self.get_context(workflow_id)
        self._check_writer(context, path, writer)
        self._check_depth(path, value)
        async with self._lock(workflow_id):
            try:
                set_path(context.data, path, copy.deepcopy(value))
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            context.updated_at = self._clock()
            await self._persist(context)

    async def merge(self, workflow_id: str, values: Mapping[str, Any], *, writer: str | None = None) -> None:
        """Deep-merge a mapping into the tree, checking ownership per top-level key."""
        context = await self.get_context(workflow_id)
        for key, value in values.items():
            self._check_writer(context, key, writer)
            self._check_depth(key, value)
        async with self._lock(workflow_id):
            _deep_merge(context.data, values)
            context.updated_at = self._clock()
            await self._persist(context)

    async def remove(self, workflow_id: str, path: str, *, writer: str | None = None) -> bool:
        context = await self.get_context(workflow_id)
        self._check_writer(context, path, writer)
        async with self._lock(workflow_id):
            removed = delete_path(context.data, path)
            if removed:
                context.updated_at = self._clock()
                await self._persist(context)
        return removed

    async def resolve_template(
        self,
        workflow_id: str,
        template: str,
        *,
        missing: list[str] | None = None,
    ) -> str:
        """Render ``{{ path }}`` / ``{{ context.path }}`` placeholders from the context."""
        context = await self.get_context(workflow_id)
        return render_template(template, context.data, missing=missing)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def snapshot(self, workflow_id: str, label: str | None = None) -> str:
        """Capture the current data. The oldest snapshot is dropped past ``max_snapshots``."""
        context = await self.get_context(workflow_id)
        snap = ContextSnapshot(
            snapshot_id=uuid.uuid4().hex,
            data=copy.deepcopy(context.data),
            created_at=self._clock(),
            label=label,
        )
        async with self._lock(workflow_id):
            context.snapshots.append(snap)
            if len(context.snapshots) > self.config.max_snapshots:
                del context.snapshots[: len(context.snapshots) - self.config.max_snapshots]
            await self._persist(context)
        return snap.snapshot_id

    async def restore(self, workflow_id: str, snapshot_id: str | None = None) -> None:
        """Replace the data with a snapshot (the latest one when no id is given)."""
        context = await self.get_context(workflow_id)
        if not context.snapshots:
            raise NotFoundError("Snapshot", snapshot_id or "latest")
        if snapshot_id is None:
            snap = context.snapshots[-1]
        else:
            snap = next((s for s in context.snapshots if s.snapshot_id == snapshot_id), None)
            if snap is None:
                raise NotFoundError("Snapshot", snapshot_id)
        async with self._lock(workflow_id):
            context.data = copy.deepcopy(snap.data)
            context.updated_at = self._clock()
            await self._persist(context)
        logger.info(f"Restored context {workflow_id} to snapshot {snap.snapshot_id}")

    async def list_snapshots(self, workflow_id: str) -> list[ContextSnapshot]:
        context = await self.get_context(workflow_id)
        return list(context.snapshots)


__all__ = ["ContextSnapshot", "WorkflowContext", "WorkflowContextStore"]
