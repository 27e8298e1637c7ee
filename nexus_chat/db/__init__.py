"""Database module."""

from nexus_chat.db.conversation_store import ConversationStore, conversation_store
from nexus_chat.db.database import close_database, get_db, init_database
from nexus_chat.db.fact_store import FactPersistError, FactStore, fact_store
from nexus_chat.db.preferences import PreferenceStore, preference_store

__all__ = [
    "get_db",
    "init_database",
    "close_database",
    "conversation_store",
    "ConversationStore",
    "fact_store",
    "FactStore",
    "FactPersistError",
    "preference_store",
    "PreferenceStore",
]
