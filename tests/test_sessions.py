"""Tests for the session stores.

Both implementations run through the same behavioural suite; the SQL
store uses an in-memory aiosqlite database.
"""

import pytest
import pytest_asyncio
from sqlalchemy import update

from tandem.agent.models import Message, ToolCall, Usage
from tandem.storage.database import Database
from tandem.storage.models import SessionRecord
from tandem.storage.sessions import (
    DEFAULT_TITLE,
    InMemorySessionStore,
    SqlSessionStore,
    derive_title,
    new_session_id,
)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, settings):
    if request.param == "memory":
        yield InMemorySessionStore(default_system_prompt="sys")
        return
    db = Database(settings)
    await db.connect()
    yield SqlSessionStore(db, default_system_prompt="sys")
    await db.disconnect()


# ---------------------------------------------------------------------------
# Titles and ids
# ---------------------------------------------------------------------------


class TestTitles:
    def test_first_user_message_wins(self):
        messages = [Message.system("s"), Message.assistant("greeting"), Message.user("  fix   the\nbuild  ")]
        assert derive_title(messages) == "fix the build"

    def test_falls_back_to_assistant(self):
        messages = [Message.system("s"), Message.user("   "), Message.assistant("Hello there")]
        assert derive_title(messages) == "Hello there"

    def test_long_titles_are_truncated(self):
        title = derive_title([Message.user("word " * 20)])
        assert title.endswith("…")
        assert len(title) <= 43

    def test_nothing_to_derive(self):
        assert derive_title([Message.system("s")]) is None

    def test_ids_are_unique(self):
        ids = {new_session_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("session-") for i in ids)


# ---------------------------------------------------------------------------
# Store behaviour (both implementations)
# ---------------------------------------------------------------------------


class TestStore:
    @pytest.mark.asyncio
    async def test_bootstrap_creates_one_session(self, store):
        session = await store.ensure_bootstrapped()

        assert session.title == DEFAULT_TITLE
        assert session.messages == (Message.system("sys"),)
        assert (await store.get_active()).id == session.id
        assert (await store.ensure_bootstrapped()).id == session.id
        assert len(await store.list_summaries()) == 1

    @pytest.mark.asyncio
    async def test_new_sessions_are_listed_first_and_active(self, store):
        first = await store.create()
        second = await store.create(title="Second", system_prompt="custom")

        summaries = await store.list_summaries()
        assert [s.id for s in summaries] == [second.id, first.id]
        assert (await store.get_active()).id == second.id
        assert second.messages[0].content == "custom"
        assert second.title == "Second"

    @pytest.mark.asyncio
    async def test_update_derives_title_once(self, store):
        session = await store.create()

        updated = await store.update_messages(
            session.id, [Message.system("sys"), Message.user("Refactor the parser")]
        )
        assert updated.title == "Refactor the parser"

        again = await store.update_messages(
            session.id, [Message.system("sys"), Message.user("Something else entirely")]
        )
        assert again.title == "Refactor the parser"
        assert again.updated_at >= session.updated_at

    @pytest.mark.asyncio
    async def test_messages_round_trip(self, store):
        session = await store.create()
        call = ToolCall(id="c1", name="read_file", arguments='{"file_path": "a.py"}')
        messages = (
            Message.system("sys"),
            Message.user("read a.py"),
            Message.assistant("", usage=Usage.from_counts(10, 2), tool_calls=[call]),
            Message.tool("Tool result for read_file:\nx = 1", "read_file", "c1"),
            Message.assistant("It sets x."),
        )

        await store.update_messages(session.id, messages)
        loaded = await store.get(session.id)

        assert loaded.messages == messages

    @pytest.mark.asyncio
    async def test_rename(self, store):
        session = await store.create()

        renamed = await store.rename(session.id, "  Parser work ")
        assert renamed.title == "Parser work"

        unchanged = await store.rename(session.id, "   ")
        assert unchanged.title == "Parser work"

    @pytest.mark.asyncio
    async def test_last_session_cannot_be_deleted(self, store):
        only = await store.ensure_bootstrapped()
        assert await store.delete(only.id) is False
        assert await store.get(only.id) is not None

    @pytest.mark.asyncio
    async def test_deleting_active_promotes_newest_remaining(self, store):
        oldest = await store.create()
        middle = await store.create()
        newest = await store.create()

        assert await store.delete(newest.id) is True
        assert (await store.get_active()).id == middle.id
        assert [s.id for s in await store.list_summaries()] == [middle.id, oldest.id]

    @pytest.mark.asyncio
    async def test_deleting_inactive_keeps_active(self, store):
        older = await store.create()
        newer = await store.create()

        assert await store.delete(older.id) is True
        assert (await store.get_active()).id == newer.id

    @pytest.mark.asyncio
    async def test_set_active(self, store):
        first = await store.create()
        await store.create()

        assert await store.set_active(first.id) is True
        assert (await store.get_active()).id == first.id
        assert await store.set_active("session-missing") is False

    @pytest.mark.asyncio
    async def test_unknown_ids(self, store):
        await store.ensure_bootstrapped()
        assert await store.get("nope") is None
        assert await store.update_messages("nope", [Message.system("s")]) is None
        assert await store.rename("nope", "x") is None
        assert await store.delete("nope") is False


# ---------------------------------------------------------------------------
# SQL specifics
# ---------------------------------------------------------------------------


class TestSqlStore:
    @pytest.mark.asyncio
    async def test_timestamps_are_timezone_aware(self, database):
        store = SqlSessionStore(database, default_system_prompt="sys")
        created = await store.create()
        loaded = await store.get(created.id)
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_malformed_stored_transcript_loads_empty(self, database):
        store = SqlSessionStore(database, default_system_prompt="sys")
        session = await store.create()
        async with database.session() as db_session:
            await db_session.execute(
                update(SessionRecord)
                .where(SessionRecord.id == session.id)
                .values(messages=[{"role": "wizard", "content": "?"}])
            )
            await db_session.commit()

        loaded = await store.get(session.id)
        assert loaded.messages == ()

    @pytest.mark.asyncio
    async def test_survives_a_new_store_instance(self, database):
        first = SqlSessionStore(database, default_system_prompt="sys")
        session = await first.create(title="Keep me")

        second = SqlSessionStore(database, default_system_prompt="other")
        active = await second.ensure_bootstrapped()

        assert active.id == session.id
        assert active.title == "Keep me"
