"""Pydantic models for Nexus Chat."""

from nexus_chat.models.conversation import ChatRole, ConversationSummary, Transcript, Turn
from nexus_chat.models.memory import (
    FactCreate,
    FactList,
    MemoryPreferences,
    MemoryPreferencesUpdate,
)

__all__ = [
    # Conversations
    "ChatRole",
    "ConversationSummary",
    "Transcript",
    "Turn",
    # Memory
    "FactCreate",
    "FactList",
    "MemoryPreferences",
    "MemoryPreferencesUpdate",
]
