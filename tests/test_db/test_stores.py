"""Tests for the conversation, fact and preference stores."""

from datetime import datetime, timedelta

import aiosqlite
import pytest

from nexus_chat.db import (
    ConversationStore,
    FactPersistError,
    FactStore,
    conversation_store,
    fact_store,
    preference_store,
)
from nexus_chat.db import database
from nexus_chat.db.fact_store import MAX_FACT_LENGTH, clean_fact
from nexus_chat.models import ChatRole, MemoryPreferencesUpdate, Transcript, Turn


def _transcript(*contents: str, created_at: datetime | None = None) -> Transcript:
    roles = [ChatRole.USER, ChatRole.ASSISTANT]
    turns = [Turn(role=roles[i % 2], content=c) for i, c in enumerate(contents)]
    if created_at is None:
        return Transcript(turns=turns)
    return Transcript(turns=turns, created_at=created_at)


class TestConversationStore:
    """Tests for conversation snapshots."""

    async def test_upsert_and_get(self):
        transcript = _transcript("Hello", "Hi!")

        assert await conversation_store.upsert_conversation(transcript) is True
        stored = await conversation_store.get_conversation(transcript.id)

        assert stored.id == transcript.id
        assert stored.created_at == transcript.created_at
        assert [(t.role, t.content) for t in stored.turns] == [("user", "Hello"), ("assistant", "Hi!")]

    async def test_upsert_replaces_turns(self):
        transcript = _transcript("Hello")
        await conversation_store.upsert_conversation(transcript)

        transcript.turns.append(Turn(role=ChatRole.ASSISTANT, content="Later reply"))
        await conversation_store.upsert_conversation(transcript)

        stored = await conversation_store.get_conversation(transcript.id)
        assert [t.content for t in stored.turns] == ["Hello", "Later reply"]
        assert len(await conversation_store.load_conversations()) == 1

    async def test_transient_fields_not_stored(self):
        transcript = Transcript(turns=[
            Turn(role=ChatRole.USER, content="Hi"),
            Turn(role=ChatRole.ASSISTANT, content="Typing", in_progress=True, facts_saved="x"),
        ])
        await conversation_store.upsert_conversation(transcript)

        stored = await conversation_store.get_conversation(transcript.id)
        assert not stored.turns[1].in_progress
        assert stored.turns[1].facts_saved is None

    async def test_blank_transcript_deletes(self):
        transcript = _transcript("Hello")
        await conversation_store.upsert_conversation(transcript)

        transcript.turns = [Turn(role=ChatRole.ASSISTANT, content="   ")]
        assert await conversation_store.upsert_conversation(transcript) is False

        assert await conversation_store.get_conversation(transcript.id) is None

    async def test_load_newest_first(self):
        now = datetime.now()
        older = _transcript("old", created_at=now - timedelta(days=1))
        newer = _transcript("new", created_at=now)
        await conversation_store.upsert_conversation(older)
        await conversation_store.upsert_conversation(newer)

        loaded = await conversation_store.load_conversations()

        assert [t.id for t in loaded] == [newer.id, older.id]

    async def test_delete_and_clear(self):
        first = _transcript("one")
        second = _transcript("two")
        await conversation_store.upsert_conversation(first)
        await conversation_store.upsert_conversation(second)

        assert await conversation_store.delete_conversation(first.id) is True
        assert await conversation_store.delete_conversation(first.id) is False
        assert await conversation_store.clear_all_conversations() == 1
        assert await ConversationStore().load_conversations() == []


class TestFactStore:
    """Tests for long-term facts."""

    async def test_newest_first(self):
        await fact_store.add_fact("likes tea")
        await fact_store.add_fact("lives in Lisbon")

        assert await fact_store.load_facts() == ["lives in Lisbon", "likes tea"]

    async def test_duplicate_moves_to_front(self):
        await fact_store.add_fact("likes tea")
        await fact_store.add_fact("lives in Lisbon")

        assert await fact_store.add_fact("LIKES TEA") == "LIKES TEA"

        assert await fact_store.load_facts() == ["LIKES TEA", "lives in Lisbon"]

    async def test_blank_fact_ignored(self):
        assert await fact_store.add_fact(" \n ") is None
        assert await fact_store.load_facts() == []

    async def test_fact_cleaned(self):
        await fact_store.add_fact("  multi\nline\r\nfact  ")
        assert await fact_store.load_facts() == ["multi line  fact"]

    async def test_long_fact_clipped(self):
        assert len(clean_fact("x" * 500)) == MAX_FACT_LENGTH

    async def test_capacity(self):
        store = FactStore(max_facts=3)
        for i in range(5):
            await store.add_fact(f"fact {i}")

        assert await store.load_facts() == ["fact 4", "fact 3", "fact 2"]

    async def test_remove_at(self):
        await fact_store.add_fact("a fact")
        await fact_store.add_fact("b fact")

        assert await fact_store.remove_fact_at(0) is True
        assert await fact_store.remove_fact_at(5) is False
        assert await fact_store.remove_fact_at(-1) is False
        assert await fact_store.load_facts() == ["a fact"]

    async def test_clear(self):
        await fact_store.add_fact("a fact")
        await fact_store.add_fact("b fact")

        assert await fact_store.clear_facts() == 2
        assert await fact_store.load_facts() == []

    async def test_database_error_wrapped(self):
        db = await database.get_db()
        await db.execute("DROP TABLE facts")

        with pytest.raises(FactPersistError):
            await fact_store.load_facts()
        with pytest.raises(FactPersistError):
            await fact_store.add_fact("likes tea")


class TestPreferenceStore:
    """Tests for memory preferences."""

    async def test_defaults(self):
        preferences = await preference_store.get_preferences()
        assert preferences.facts_enabled is True
        assert preferences.auto_save_enabled is True

    async def test_partial_update(self):
        updated = await preference_store.update_preferences(
            MemoryPreferencesUpdate(facts_enabled=False)
        )
        assert updated.facts_enabled is False
        assert updated.auto_save_enabled is True

        updated = await preference_store.update_preferences(
            MemoryPreferencesUpdate(auto_save_enabled=False, facts_enabled=True)
        )
        assert updated.facts_enabled is True
        assert updated.auto_save_enabled is False


class TestDatabase:
    """Tests for connection handling."""

    async def test_get_db_before_init(self, monkeypatch):
        monkeypatch.setattr(database, "_db_connection", None)
        with pytest.raises(RuntimeError):
            await database.get_db()

    async def test_schema_created(self):
        db = await database.get_db()
        cursor = await db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        tables = {row["name"] for row in await cursor.fetchall()}
        assert {"conversations", "facts", "preferences"} <= tables

    async def test_in_memory_database(self, monkeypatch):
        monkeypatch.setattr(database, "_db_connection", None)
        await database.init_database(":memory:")
        try:
            db = await database.get_db()
            assert isinstance(db, aiosqlite.Connection)
        finally:
            await database.close_database()
