"""
Tests for the workflow context store.
"""

import pytest

from agent_orchestrator.config import ContextConfig
from agent_orchestrator.errors import ContextOwnershipError, NotFoundError, ValidationError
from agent_orchestrator.storage import InMemoryKeyValueStore
from agent_orchestrator.workflow import WorkflowContextStore


def _nested(depth):
    value = "leaf"
    for _ in range(depth):
        value = {"n": value}
    return value


class TestContextLifecycle:
    """Test create, expiry and deletion."""

    @pytest.mark.asyncio
    async def test_create_and_read(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"topic": "caching", "limits": {"words": 200}})

        assert await contexts.get("wf-1", "topic") == "caching"
        assert await contexts.get("wf-1", "limits.words") == 200
        assert await contexts.get("wf-1", "missing", default="n/a") == "n/a"
        assert await contexts.data("wf-1") == {"topic": "caching", "limits": {"words": 200}}

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        with pytest.raises(ValidationError):
            await contexts.create("wf-1")

    @pytest.mark.asyncio
    async def test_reads_return_copies(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"items": [1, 2]})

        items = await contexts.get("wf-1", "items")
        items.append(3)

        assert await contexts.get("wf-1", "items") == [1, 2]

    @pytest.mark.asyncio
    async def test_expired_context_is_gone(self, clock):
        contexts = WorkflowContextStore(ContextConfig(default_ttl=60), clock=clock)
        await contexts.create("wf-1", {"a": 1})

        clock.advance(61)

        with pytest.raises(NotFoundError):
            await contexts.get("wf-1", "a")
        assert await contexts.exists("wf-1") is False

    @pytest.mark.asyncio
    async def test_extend_ttl(self, clock):
        contexts = WorkflowContextStore(ContextConfig(default_ttl=60), clock=clock)
        await contexts.create("wf-1")
        clock.advance(50)

        expires_at = await contexts.extend_ttl("wf-1", 120)
        clock.advance(60)

        assert expires_at == clock.now + 60
        assert await contexts.exists("wf-1")
        with pytest.raises(ValidationError):
            await contexts.extend_ttl("wf-1", 0)

    @pytest.mark.asyncio
    async def test_held_context_expires_only_after_release(self, clock):
        contexts = WorkflowContextStore(ContextConfig(default_ttl=10), clock=clock)
        await contexts.create("wf-1", {"a": 1}, hold=True)
        clock.advance(1000)

        assert await contexts.get("wf-1", "a") == 1
        assert await contexts.release("wf-1") == clock.now + 10

        clock.advance(11)
        assert await contexts.exists("wf-1") is False
        assert await contexts.release("wf-1") is None

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, clock):
        contexts = WorkflowContextStore(ContextConfig(default_ttl=10), clock=clock)
        await contexts.create("short")
        await contexts.create("long", ttl=100)
        clock.advance(11)

        assert contexts.cleanup_expired() == 1
        assert await contexts.exists("long")

    @pytest.mark.asyncio
    async def test_delete(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        assert await contexts.delete("wf-1") is True
        assert await contexts.exists("wf-1") is False
        assert await contexts.delete("wf-1") is False

    @pytest.mark.asyncio
    async def test_shared_store_visible_to_other_instance(self):
        store = InMemoryKeyValueStore()
        writer = WorkflowContextStore(store=store)
        reader = WorkflowContextStore(store=store)
        await writer.create("wf-1", {"status": "draft"})
        await writer.set("wf-1", "status", "final")

        assert await reader.get("wf-1", "status") == "final"


class TestOwnership:
    """Test the single-writer discipline."""

    @pytest.mark.asyncio
    async def test_owner_writes_claimed_path(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        await contexts.claim("wf-1", "draft", owner="draft")

        await contexts.set("wf-1", "draft.output", "text", writer="draft")

        assert await contexts.get("wf-1", "draft.output") == "text"
        assert await contexts.owner_of("wf-1", "draft.output") == "draft"

    @pytest.mark.asyncio
    async def test_other_writer_rejected(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        await contexts.claim("wf-1", "draft", owner="draft")

        with pytest.raises(ContextOwnershipError) as exc_info:
            await contexts.set("wf-1", "draft.output", "hijack", writer="review")

        assert exc_info.value.owner == "draft"
        assert exc_info.value.writer == "review"

    @pytest.mark.asyncio
    async def test_anonymous_write_to_owned_path_rejected(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        await contexts.claim("wf-1", "draft", owner="draft")

        with pytest.raises(ContextOwnershipError):
            await contexts.set("wf-1", "draft", "overwrite")

    @pytest.mark.asyncio
    async def test_step_cannot_write_unclaimed_path(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        with pytest.raises(ContextOwnershipError):
            await contexts.set("wf-1", "scratch", 1, writer="draft")

    @pytest.mark.asyncio
    async def test_overlapping_claims_conflict(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        await contexts.claim("wf-1", "results.a", owner="a")
        await contexts.claim("wf-1", "results.b", owner="b")

        with pytest.raises(ContextOwnershipError):
            await contexts.claim("wf-1", "results", owner="c")
        await contexts.claim("wf-1", "results.a", owner="a")

    @pytest.mark.asyncio
    async def test_merge_checks_each_key(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"settings": {"tone": "formal", "length": 100}})
        await contexts.claim("wf-1", "draft", owner="draft")

        await contexts.merge("wf-1", {"settings": {"length": 300}})
        assert await contexts.get("wf-1", "settings") == {"tone": "formal", "length": 300}

        with pytest.raises(ContextOwnershipError):
            await contexts.merge("wf-1", {"draft": "x"})

    @pytest.mark.asyncio
    async def test_remove(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"a": {"b": 1, "c": 2}})

        assert await contexts.remove("wf-1", "a.b") is True
        assert await contexts.remove("wf-1", "a.b") is False
        assert await contexts.get("wf-1", "a") == {"c": 2}


class TestLimits:
    """Test nesting limits and path validation."""

    @pytest.mark.asyncio
    async def test_nesting_limit(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")

        await contexts.set("wf-1", "x", _nested(9))
        with pytest.raises(ValidationError):
            await contexts.set("wf-1", "y", _nested(10))
        with pytest.raises(ValidationError):
            await contexts.set("wf-1", "a.b.c", _nested(8))

    @pytest.mark.asyncio
    async def test_initial_data_nesting_limit(self):
        contexts = WorkflowContextStore(ContextConfig(max_nesting_depth=3))
        with pytest.raises(ValidationError):
            await contexts.create("wf-1", {"a": _nested(3)})


class TestSnapshots:
    """Test snapshot and restore."""

    @pytest.mark.asyncio
    async def test_restore_latest(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"version": 1})
        await contexts.snapshot("wf-1", label="v1")
        await contexts.set("wf-1", "version", 2)

        await contexts.restore("wf-1")

        assert await contexts.get("wf-1", "version") == 1

    @pytest.mark.asyncio
    async def test_restore_by_id(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"version": 1})
        first = await contexts.snapshot("wf-1")
        await contexts.set("wf-1", "version", 2)
        await contexts.snapshot("wf-1")
        await contexts.set("wf-1", "version", 3)

        await contexts.restore("wf-1", first)

        assert await contexts.get("wf-1", "version") == 1
        with pytest.raises(NotFoundError):
            await contexts.restore("wf-1", "no-such-snapshot")

    @pytest.mark.asyncio
    async def test_restore_without_snapshots(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1")
        with pytest.raises(NotFoundError):
            await contexts.restore("wf-1")

    @pytest.mark.asyncio
    async def test_snapshots_are_capped(self):
        contexts = WorkflowContextStore(ContextConfig(max_snapshots=2))
        await contexts.create("wf-1")
        ids = [await contexts.snapshot("wf-1", label=str(n)) for n in range(3)]

        snapshots = await contexts.list_snapshots("wf-1")

        assert [s.snapshot_id for s in snapshots] == ids[1:]
        assert [s.label for s in snapshots] == ["1", "2"]


class TestTemplates:
    """Test template rendering against the context."""

    @pytest.mark.asyncio
    async def test_resolve_template(self):
        contexts = WorkflowContextStore()
        await contexts.create("wf-1", {"topic": "caching", "draft": {"output": {"words": 120}}})
        missing = []

        text = await contexts.resolve_template(
            "wf-1",
            "Review {{ topic }} ({{ context.draft.output }}) by {{ author }}",
            missing=missing,
        )

        assert text == 'Review caching ({"words": 120}) by '
        assert missing == ["author"]
