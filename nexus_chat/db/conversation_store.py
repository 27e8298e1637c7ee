"""Database operations for conversation snapshots."""

import json
import logging
from datetime import datetime

import aiosqlite

from nexus_chat.db.database import get_db
from nexus_chat.models import Transcript, Turn

logger = logging.getLogger(__name__)


def _row_to_transcript(row: aiosqlite.Row) -> Transcript:
    """Convert a database row to a Transcript model."""
    turns = json.loads(row["turns_json"] or "[]")
    return Transcript(
        id=row["id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        turns=[Turn(role=t["role"], content=t.get("content", "")) for t in turns],
    )


class ConversationStore:
    """Stores whole-conversation snapshots keyed by conversation id.

    Only role and content are persisted; streaming flags and notes are
    transient UI state.
    """

    async def load_conversations(self) -> list[Transcript]:
        """Load every stored conversation, newest first."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM conversations ORDER BY created_at DESC"
        )
        rows = await cursor.fetchall()
        return [_row_to_transcript(row) for row in rows]

    async def get_conversation(self, conversation_id: str) -> Transcript | None:
        """Load one conversation by id."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        row = await cursor.fetchone()
        return _row_to_transcript(row) if row else None

    async def upsert_conversation(self, transcript: Transcript) -> bool:
        """Insert or replace a conversation snapshot.

        A transcript without any non-blank turn is deleted instead.

        Returns:
            True if the snapshot was stored, False if it was treated as a delete.
        """
        if not transcript.has_content:
            await self.delete_conversation(transcript.id)
            return False

        db = await get_db()
        turns_json = json.dumps(
            [{"role": turn.role, "content": turn.content} for turn in transcript.turns]
        )
        await db.execute(
            """
            INSERT INTO conversations (id, created_at, updated_at, turns_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                turns_json = excluded.turns_json,
                updated_at = excluded.updated_at
            """,
            (
                transcript.id,
                transcript.created_at.isoformat(),
                datetime.now().isoformat(),
                turns_json,
            ),
        )
        await db.commit()
        return True

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation. Returns True if a row was removed."""
        db = await get_db()
        cursor = await db.execute(
            "DELETE FROM conversations WHERE id = ?", (conversation_id,)
        )
        await db.commit()
        return cursor.rowcount > 0

    async def clear_all_conversations(self) -> int:
        """Delete every conversation. Returns the number removed."""
        db = await get_db()
        cursor = await db.execute("DELETE FROM conversations")
        await db.commit()
        logger.info(f"Cleared {cursor.rowcount} conversation(s)")
        return cursor.rowcount


conversation_store = ConversationStore()
