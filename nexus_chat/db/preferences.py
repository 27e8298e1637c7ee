"""Database operations for memory preferences."""

from nexus_chat.db.database import get_db
from nexus_chat.models import MemoryPreferences, MemoryPreferencesUpdate


class PreferenceStore:
    """Boolean memory flags stored as key/value rows."""

    async def get_preferences(self) -> MemoryPreferences:
        """Load preferences, falling back to defaults for unset keys."""
        db = await get_db()
        cursor = await db.execute("SELECT key, value FROM preferences")
        stored = {row["key"]: row["value"] == "1" for row in await cursor.fetchall()}
        defaults = MemoryPreferences()
        return MemoryPreferences(
            facts_enabled=stored.get("facts_enabled", defaults.facts_enabled),
            auto_save_enabled=stored.get("auto_save_enabled", defaults.auto_save_enabled),
        )

    async def update_preferences(self, update: MemoryPreferencesUpdate) -> MemoryPreferences:
        """Apply a partial update and return the resulting preferences."""
        db = await get_db()
        for key, value in update.model_dump(exclude_none=True).items():
            await db.execute(
                """
                INSERT INTO preferences (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, "1" if value else "0"),
            )
        await db.commit()
        return await self.get_preferences()


preference_store = PreferenceStore()
