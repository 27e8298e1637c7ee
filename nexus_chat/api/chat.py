"""Chat API endpoints for streamed multi-turn conversations."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from nexus_chat.llm.chat import ChatSession, ChatSessionConfig, ChatStrings
from nexus_chat.llm.chat.manager import get_session_manager
from nexus_chat.llm.chat.models import (
    ChatEvent,
    ChatSessionInfo,
    ChatSessionSnapshot,
    CompleteRequest,
    CompleteResponse,
    CreateChatSessionRequest,
    SendMessageRequest,
    SendMessageResponse,
)
from nexus_chat.llm.client import TransportError
from nexus_chat.llm.markers import extract_markers
from nexus_chat.models import ChatRole, ConversationSummary, Turn

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_session(session_id: str) -> ChatSession:
    session = get_session_manager().get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("/chat/sessions")
async def create_chat_session(
    request: CreateChatSessionRequest | None = None,
) -> ChatSessionSnapshot:
    """Create a new chat session.

    The session opens a fresh conversation and can then be driven with the
    message/stop/retry endpoints and observed through the events stream.
    """
    request = request or CreateChatSessionRequest()
    overrides = request.model_dump(exclude_none=True)
    config = ChatSessionConfig(strings=ChatStrings(**overrides))

    session = await get_session_manager().create_session(config)
    return session.snapshot()


@router.get("/chat/sessions")
async def list_chat_sessions() -> list[ChatSessionInfo]:
    """List active chat sessions."""
    return get_session_manager().list_sessions()


@router.get("/chat/sessions/{session_id}")
async def get_chat_session(session_id: str) -> ChatSessionSnapshot:
    """Get the full state of a chat session."""
    return _require_session(session_id).snapshot()


@router.delete("/chat/sessions/{session_id}")
async def close_chat_session(session_id: str) -> dict[str, str]:
    """Explicitly close a chat session."""
    _require_session(session_id)
    await get_session_manager().close_session(session_id)
    return {"status": "closed", "session_id": session_id}


@router.post("/chat/sessions/{session_id}/messages")
async def send_message(session_id: str, request: SendMessageRequest) -> SendMessageResponse:
    """Send a user message.

    Blank messages, or messages sent while a reply is still streaming, are
    not accepted. The reply streams through the events endpoint unless
    ``wait`` is set.
    """
    session = _require_session(session_id)
    accepted = session.send(request.message)
    if accepted and request.wait:
        await session.wait_until_idle()
    return SendMessageResponse(accepted=accepted, snapshot=session.snapshot())


@router.post("/chat/sessions/{session_id}/stop")
async def stop_generation(session_id: str) -> ChatSessionSnapshot:
    """Stop the reply currently streaming, if any."""
    session = _require_session(session_id)
    await session.stop()
    return session.snapshot()


@router.post("/chat/sessions/{session_id}/retry")
async def retry_last_message(session_id: str, wait: bool = False) -> SendMessageResponse:
    """Resend the last user message."""
    session = _require_session(session_id)
    accepted = session.retry()
    if accepted and wait:
        await session.wait_until_idle()
    return SendMessageResponse(accepted=accepted, snapshot=session.snapshot())


@router.get("/chat/sessions/{session_id}/events")
async def stream_session_events(session_id: str) -> StreamingResponse:
    """Server-Sent Events stream of session changes.

    The first event is a ``transcript`` event for the active conversation,
    followed by every ChatEvent the session publishes until it is closed.
    """
    session = _require_session(session_id)

    async def event_generator():
        queue = session.subscribe()
        try:
            opening = ChatEvent(
                event="transcript",
                state=session.state,
                conversation_id=session.transcript.id,
            )
            yield f"data: {opening.model_dump_json(exclude_none=True)}\n\n"
            while True:
                event = await queue.get()
                yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"
                if event.event == "closed":
                    break
        finally:
            session.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ==================== Conversations ====================


@router.get("/chat/sessions/{session_id}/conversations")
async def list_conversations(session_id: str) -> list[ConversationSummary]:
    """List stored conversations, newest first."""
    session = _require_session(session_id)
    await session.refresh_conversations()
    return [ConversationSummary.from_transcript(c) for c in session.conversations]


@router.post("/chat/sessions/{session_id}/conversations")
async def new_conversation(session_id: str) -> ChatSessionSnapshot:
    """Start a new conversation, stopping any reply in flight."""
    session = _require_session(session_id)
    await session.new_conversation()
    return session.snapshot()


@router.post("/chat/sessions/{session_id}/conversations/{conversation_id}/open")
async def open_conversation(session_id: str, conversation_id: str) -> ChatSessionSnapshot:
    """Switch to a stored conversation, stopping any reply in flight."""
    session = _require_session(session_id)
    if not await session.open_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return session.snapshot()


@router.delete("/chat/sessions/{session_id}/conversations/{conversation_id}")
async def delete_conversation(session_id: str, conversation_id: str) -> ChatSessionSnapshot:
    """Delete a stored conversation."""
    session = _require_session(session_id)
    if not await session.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return session.snapshot()


@router.delete("/chat/sessions/{session_id}/conversations")
async def clear_conversations(session_id: str) -> ChatSessionSnapshot:
    """Delete every stored conversation and start afresh."""
    session = _require_session(session_id)
    await session.clear_all_history()
    return session.snapshot()


# ==================== Single-shot completion ====================


@router.post("/chat/complete")
async def complete_once(request: CompleteRequest) -> CompleteResponse:
    """Single-shot, non-streaming completion without a session.

    Memory markers are stripped from the reply and returned as facts; they
    are not saved.
    """
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")

    config = ChatSessionConfig()
    turns = [
        Turn(role=ChatRole.SYSTEM, content=request.system_prompt or config.strings.system_prompt),
        Turn(role=ChatRole.USER, content=message),
    ]

    async with get_session_manager().client_factory(config) as client:
        try:
            text = await client.complete(turns)
        except TransportError as e:
            logger.error(f"Single-shot completion failed: {e}")
            raise HTTPException(status_code=502, detail=str(e)) from e

    result = extract_markers(text, config.marker_grammar())
    return CompleteResponse(content=result.visible, facts=result.facts)


# Admin endpoint for monitoring
@router.get("/chat/stats")
async def get_chat_stats() -> dict[str, Any]:
    """Get chat session statistics (admin endpoint)."""
    return get_session_manager().get_stats()
