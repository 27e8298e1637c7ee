"""Chat session infrastructure for streamed multi-turn conversations.

This module provides the core abstractions for session-based chat:
- ChatSession: Per-user state machine streaming replies into a transcript
- ChatSessionManager: Manages session lifecycle
"""

from nexus_chat.llm.chat.manager import ChatSessionManager, get_session_manager
from nexus_chat.llm.chat.models import (
    ChatEvent,
    ChatSessionConfig,
    ChatSessionInfo,
    ChatSessionSnapshot,
    ChatStrings,
    Notification,
    PendingSlot,
    SessionState,
    TurnOutcome,
)
from nexus_chat.llm.chat.personal_facts import extract_personal_facts
from nexus_chat.llm.chat.session import ChatSession

__all__ = [
    "ChatEvent",
    "ChatSession",
    "ChatSessionConfig",
    "ChatSessionInfo",
    "ChatSessionManager",
    "ChatSessionSnapshot",
    "ChatStrings",
    "Notification",
    "PendingSlot",
    "SessionState",
    "TurnOutcome",
    "extract_personal_facts",
    "get_session_manager",
]
