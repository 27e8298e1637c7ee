"""Fixtures for chat session tests."""

import asyncio
from dataclasses import dataclass, field

import pytest

from nexus_chat.llm.chat.models import ChatSessionConfig
from nexus_chat.llm.chat.session import ChatSession


@dataclass
class Reply:
    """Scripted behaviour for one streamed request."""

    deltas: list[str] = field(default_factory=list)
    error: Exception | None = None
    hang: bool = False


class FakeClient:
    """Completion client double that replays scripted replies."""

    def __init__(self):
        self.replies: list[Reply] = []
        self.requests = []
        self.callbacks = []
        self.cancelled = 0
        self.closed = False
        self.hanging = asyncio.Event()
        self.teardown_delay = 0.0  # Time a cancelled stream takes to close

    def queue(self, *deltas: str, error: Exception | None = None, hang: bool = False) -> None:
        """Script the next request: deliver deltas, then fail or hang if asked."""
        self.replies.append(Reply(list(deltas), error, hang))

    async def stream(self, turns, on_delta):
        self.requests.append(list(turns))
        self.callbacks.append(on_delta)
        reply = self.replies.pop(0) if self.replies else Reply()
        for delta in reply.deltas:
            on_delta(delta)
            await asyncio.sleep(0)
        if reply.error is not None:
            raise reply.error
        if reply.hang:
            self.hanging.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                if self.teardown_delay:
                    await asyncio.sleep(self.teardown_delay)
                raise

    def cancel_active(self) -> bool:
        self.cancelled += 1
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
async def make_session(fake_client):
    """Build an initialized session around the fake client."""
    sessions = []

    async def _make(config: ChatSessionConfig | None = None, **kwargs) -> ChatSession:
        session = ChatSession(
            session_id="test-session",
            client=kwargs.pop("client", fake_client),
            config=config or ChatSessionConfig(facts_note_seconds=0.01),
            **kwargs,
        )
        await session.initialize()
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        await session.close()
