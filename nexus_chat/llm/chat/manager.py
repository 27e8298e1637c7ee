"""ChatSessionManager handles session lifecycle and storage."""

import asyncio
import logging
import os
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from nexus_chat.db import preference_store
from nexus_chat.llm.chat.models import ChatSessionConfig, ChatSessionInfo
from nexus_chat.llm.chat.session import ChatSession
from nexus_chat.llm.client import CompletionClient
from nexus_chat.models import MemoryPreferences

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ChatSessionConfig], CompletionClient]

# Singleton manager instance
_manager: "ChatSessionManager | None" = None


def default_client_factory(config: ChatSessionConfig) -> CompletionClient:
    """Build a completion client from session configuration."""
    return CompletionClient(
        model=config.model,
        temperature=config.temperature,
        top_p=config.top_p,
    )


class ChatSessionManager:
    """Manages chat session lifecycle.

    Responsibilities:
    - Create sessions with the current memory preferences
    - Store active sessions (in-memory)
    - Push preference changes to live sessions
    - Cleanup expired sessions
    """

    def __init__(
        self,
        session_timeout_minutes: int | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """Initialize the session manager.

        Args:
            session_timeout_minutes: How long idle sessions live before cleanup.
                Defaults to CHAT_SESSION_TIMEOUT_MINUTES env var (30).
            client_factory: Builds the completion client for each new session.
        """
        if session_timeout_minutes is None:
            session_timeout_minutes = int(os.getenv("CHAT_SESSION_TIMEOUT_MINUTES", "30"))
        self._sessions: dict[str, ChatSession] = {}
        self._session_timeout = timedelta(minutes=session_timeout_minutes)
        self._cleanup_task: asyncio.Task | None = None
        self.client_factory = client_factory or default_client_factory

    @property
    def active_session_count(self) -> int:
        """Number of active sessions."""
        return len(self._sessions)

    async def create_session(self, config: ChatSessionConfig | None = None) -> ChatSession:
        """Create and initialize a new chat session.

        Args:
            config: Optional session configuration.

        Returns:
            An initialized ChatSession.
        """
        config = config or ChatSessionConfig()
        preferences = await preference_store.get_preferences()

        session = ChatSession(
            session_id=str(uuid.uuid4())[:12],
            client=self.client_factory(config),
            config=config,
            facts_enabled=preferences.facts_enabled,
            auto_save_enabled=preferences.auto_save_enabled,
        )
        await session.initialize()

        self._sessions[session.session_id] = session
        logger.info(
            f"Created chat session {session.session_id} "
            f"(total sessions: {len(self._sessions)})"
        )
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        """Get a session by ID, refreshing its last activity."""
        session = self._sessions.get(session_id)
        if session:
            session.last_activity = datetime.now()
        return session

    def list_sessions(self) -> list[ChatSessionInfo]:
        """List all active sessions."""
        return [s.get_info() for s in self._sessions.values()]

    def apply_memory_settings(self, preferences: MemoryPreferences) -> None:
        """Push updated memory preferences to every live session."""
        for session in self._sessions.values():
            session.update_memory_settings(
                preferences.facts_enabled, preferences.auto_save_enabled
            )

    async def close_session(self, session_id: str) -> bool:
        """Close and remove a session.

        Returns:
            True if session was found and closed, False otherwise.
        """
        session = self._sessions.pop(session_id, None)
        if session:
            await session.close()
            logger.info(f"Closed chat session {session_id}")
            return True
        return False

    async def cleanup_expired(self) -> int:
        """Close idle sessions that have been inactive too long.

        Returns:
            Number of sessions cleaned up.
        """
        now = datetime.now()
        expired_ids = [
            sid for sid, s in self._sessions.items()
            if not s.is_processing and now - s.last_activity > self._session_timeout
        ]

        for session_id in expired_ids:
            logger.info(f"Cleaning up expired session {session_id}")
            await self.close_session(session_id)

        if expired_ids:
            logger.info(f"Cleaned up {len(expired_ids)} expired chat session(s)")

        return len(expired_ids)

    async def start_cleanup_task(self) -> None:
        """Start the background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Started chat session cleanup background task")

    async def stop_cleanup_task(self) -> None:
        """Stop the background cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Stopped chat session cleanup background task")

    async def _cleanup_loop(self) -> None:
        """Background loop that cleans up expired sessions."""
        while True:
            try:
                await asyncio.sleep(60)  # Check every minute
                await self.cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in chat cleanup task: {e}")

    async def shutdown(self) -> None:
        """Shutdown the manager and close all sessions."""
        await self.stop_cleanup_task()

        for session_id in list(self._sessions.keys()):
            await self.close_session(session_id)

        logger.info("Chat session manager shutdown complete")

    def get_stats(self) -> dict[str, Any]:
        """Get manager statistics."""
        now = datetime.now()
        return {
            "active_sessions": len(self._sessions),
            "processing_sessions": sum(1 for s in self._sessions.values() if s.is_processing),
            "oldest_session_age_seconds": self._oldest_session_age(now),
            "cleanup_task_running": self._cleanup_task is not None,
        }

    def _oldest_session_age(self, now: datetime) -> float | None:
        """Get age of oldest session in seconds."""
        if not self._sessions:
            return None
        oldest = min(s.created_at for s in self._sessions.values())
        return (now - oldest).total_seconds()


def get_session_manager() -> ChatSessionManager:
    """Get the singleton session manager instance."""
    global _manager
    if _manager is None:
        _manager = ChatSessionManager()
    return _manager


async def init_session_manager() -> ChatSessionManager:
    """Initialize the session manager and start background tasks."""
    manager = get_session_manager()
    await manager.start_cleanup_task()
    return manager


async def shutdown_session_manager() -> None:
    """Shutdown the session manager."""
    global _manager
    if _manager:
        await _manager.shutdown()
        _manager = None
