"""Tests for the session store (in-memory and SQLite implementations)."""

import pytest
import pytest_asyncio

from loom.models import ExternalLink, PlanStep, PlanStepStatus, SessionRecord
from loom.session_store import InMemorySessionStore, SQLiteSessionStore


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Create a fresh store of each kind for each test."""
    if request.param == "memory":
        s = InMemorySessionStore()
    else:
        s = SQLiteSessionStore(str(tmp_path / "test_sessions.db"))
    await s.initialize()
    yield s
    await s.close()


def _make_session(session_id: str = "session-1", **kwargs) -> SessionRecord:
    return SessionRecord(tracker_session_id=session_id, **kwargs)


class TestCRUD:
    async def test_put_and_get(self, store):
        await store.put(
            _make_session(generation_chat_id="chat-1", chat_url="https://v0.dev/chat/1")
        )

        fetched = await store.get("session-1")
        assert fetched is not None
        assert fetched.generation_chat_id == "chat-1"
        assert fetched.chat_url == "https://v0.dev/chat/1"

    async def test_get_nonexistent(self, store):
        assert await store.get("nonexistent") is None

    async def test_put_replaces(self, store):
        await store.put(_make_session(project_id="p1"))
        await store.put(_make_session(project_id="p2"))
        assert (await store.get("session-1")).project_id == "p2"

    async def test_delete(self, store):
        await store.put(_make_session())
        await store.delete("session-1")
        assert await store.get("session-1") is None

    async def test_delete_absent_is_noop(self, store):
        await store.delete("nonexistent")

    async def test_list_all(self, store):
        await store.put(_make_session("a"))
        await store.put(_make_session("b"))
        ids = {r.tracker_session_id for r in await store.list_all()}
        assert ids == {"a", "b"}

    async def test_plan_and_links_round_trip(self, store):
        await store.put(
            _make_session(
                plan=[PlanStep(label="Analyze", status=PlanStepStatus.COMPLETED)],
                external_links=[ExternalLink(label="View in v0", url="https://v0.dev/chat/1")],
            )
        )
        fetched = await store.get("session-1")
        assert fetched.plan[0].status == PlanStepStatus.COMPLETED
        assert fetched.external_links[0].url == "https://v0.dev/chat/1"


class TestInsertIfAbsent:
    async def test_first_insert_wins(self, store):
        assert await store.insert_if_absent(_make_session(project_id="first")) is True
        assert await store.insert_if_absent(_make_session(project_id="second")) is False
        assert (await store.get("session-1")).project_id == "first"


class TestUpdate:
    async def test_merges_fields(self, store):
        await store.put(_make_session(generation_chat_id="chat-1"))
        before = await store.get("session-1")

        updated = await store.update("session-1", deployment_url="https://x.vercel.app")
        assert updated.deployment_url == "https://x.vercel.app"
        assert updated.generation_chat_id == "chat-1"
        assert updated.updated_at >= before.updated_at
        assert updated.created_at == before.created_at

    async def test_absent_is_noop(self, store):
        assert await store.update("nonexistent", chat_url="x") is None
        assert await store.get("nonexistent") is None

    async def test_chat_id_assigned_once(self, store):
        await store.put(_make_session())
        await store.update("session-1", generation_chat_id="chat-1")
        with pytest.raises(ValueError):
            await store.update("session-1", generation_chat_id="chat-2")
        # Re-sending the same id is allowed
        await store.update("session-1", generation_chat_id="chat-1")

    async def test_immutable_fields(self, store):
        await store.put(_make_session())
        with pytest.raises(ValueError):
            await store.update("session-1", tracker_session_id="other")

    async def test_get_returns_copies(self, store):
        await store.put(_make_session())
        fetched = await store.get("session-1")
        fetched.chat_url = "mutated"
        assert (await store.get("session-1")).chat_url is None


class TestDeliveries:
    async def test_mark_delivery_seen(self, store):
        assert await store.mark_delivery_seen("d1") is True
        assert await store.mark_delivery_seen("d1") is False
        assert await store.mark_delivery_seen("d2") is True


class TestSQLiteSpecific:
    async def test_not_initialized(self, tmp_path):
        s = SQLiteSessionStore(str(tmp_path / "x.db"))
        with pytest.raises(RuntimeError):
            await s.get("session-1")

    async def test_persists_across_reopen(self, tmp_path):
        db_path = str(tmp_path / "persist.db")
        s = SQLiteSessionStore(db_path)
        await s.initialize()
        await s.insert_if_absent(_make_session(generation_chat_id="chat-1"))
        await s.close()

        s = SQLiteSessionStore(db_path)
        await s.initialize()
        assert (await s.get("session-1")).generation_chat_id == "chat-1"
        await s.close()

    async def test_prune_deliveries(self, tmp_path):
        s = SQLiteSessionStore(str(tmp_path / "prune.db"))
        await s.initialize()
        await s.mark_delivery_seen("d1")
        assert await s.prune_deliveries(max_age_hours=0) == 1
        assert await s.mark_delivery_seen("d1") is True
        await s.close()
