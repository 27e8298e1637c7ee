"""Database operations for long-term user facts."""

import logging

import aiosqlite

from nexus_chat.db.database import get_db

logger = logging.getLogger(__name__)

MAX_FACTS = 60
MAX_FACT_LENGTH = 240


class FactPersistError(Exception):
    """Reading or writing the fact store failed."""


def clean_fact(text: str) -> str:
    """Normalize a fact for storage: single line, trimmed, clipped."""
    clean = text.replace("\r", " ").replace("\n", " ").strip()
    if len(clean) > MAX_FACT_LENGTH:
        clean = clean[:MAX_FACT_LENGTH].rstrip()
    return clean


class FactStore:
    """Ordered list of facts, newest first, deduplicated case-insensitively."""

    def __init__(self, max_facts: int = MAX_FACTS):
        self.max_facts = max_facts

    async def _rows(self) -> list[aiosqlite.Row]:
        db = await get_db()
        cursor = await db.execute("SELECT id, text FROM facts ORDER BY id DESC")
        return list(await cursor.fetchall())

    async def load_facts(self) -> list[str]:
        """Load stored facts, newest first."""
        try:
            return [row["text"] for row in await self._rows()]
        except aiosqlite.Error as e:
            raise FactPersistError(f"Failed to load facts: {e}") from e

    async def add_fact(self, text: str) -> str | None:
        """Save a fact at the front of the list.

        An existing fact equal to it (ignoring case) is replaced, and the
        oldest facts beyond ``max_facts`` are dropped.

        Returns:
            The stored text, or None if the fact was blank.
        """
        clean = clean_fact(text)
        if not clean:
            return None

        try:
            db = await get_db()
            duplicates = [
                row["id"] for row in await self._rows()
                if row["text"].casefold() == clean.casefold()
            ]
            await db.executemany(
                "DELETE FROM facts WHERE id = ?", [(fact_id,) for fact_id in duplicates]
            )
            await db.execute("INSERT INTO facts (text) VALUES (?)", (clean,))
            await db.execute(
                """
                DELETE FROM facts WHERE id NOT IN (
                    SELECT id FROM facts ORDER BY id DESC LIMIT ?
                )
                """,
                (self.max_facts,),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise FactPersistError(f"Failed to save fact: {e}") from e

        logger.info(f"Saved fact: {clean}")
        return clean

    async def remove_fact_at(self, index: int) -> bool:
        """Remove the fact at a position of ``load_facts()``.

        Returns:
            True if a fact was removed, False if the index was out of range.
        """
        try:
            rows = await self._rows()
            if index < 0 or index >= len(rows):
                return False
            db = await get_db()
            await db.execute("DELETE FROM facts WHERE id = ?", (rows[index]["id"],))
            await db.commit()
        except aiosqlite.Error as e:
            raise FactPersistError(f"Failed to remove fact: {e}") from e
        return True

    async def clear_facts(self) -> int:
        """Delete every fact. Returns the number removed."""
        try:
            db = await get_db()
            cursor = await db.execute("DELETE FROM facts")
            await db.commit()
        except aiosqlite.Error as e:
            raise FactPersistError(f"Failed to clear facts: {e}") from e
        return cursor.rowcount


fact_store = FactStore()
