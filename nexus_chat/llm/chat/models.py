"""Pydantic models for chat sessions."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from nexus_chat.llm.markers import MarkerGrammar
from nexus_chat.models import ConversationSummary, Turn


class SessionState(str, Enum):
    """Where the session is in the lifecycle of a turn."""

    IDLE = "idle"
    SENDING = "sending"  # Request issued, deltas streaming into the slot
    CANCELLING = "cancelling"  # Stop requested, tearing down the transport


class TurnOutcome(str, Enum):
    """How the most recent turn ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class PendingSlot:
    """The assistant turn a running stream is allowed to write to."""

    conversation_id: str
    index: int


class ChatStrings(BaseModel):
    """User-facing strings, replaceable for localization."""

    system_prompt: str = "You are Nexus, a helpful assistant. Answer clearly and concisely."
    greeting: str = "Hi! How can I help you today?"
    interrupted: str = "(interrupted)"
    generic_error: str = "Something went wrong."
    assistant_error_template: str = "Error: {error}"
    notification_failed_template: str = "Failed: {error}"
    retry_action_label: str = "Retry"
    facts_instructions: str = (
        "When the user shares stable personal information (age, preferences, "
        "birthday, location, name) you MAY save it as a memory.\n"
        "To save it, add a line at the END of your reply, on its own, in the format: {marker}\n"
        "Never put markdown, numbering or unnecessary symbols inside the memory."
    )
    facts_context_header: str = (
        "Saved facts about the user (use them to personalize answers, "
        "do not mention them unless relevant):"
    )


class ChatSessionConfig(BaseModel):
    """Configuration for creating a chat session."""

    model: str | None = None  # Falls back to COMPLETION_MODEL
    temperature: float = 0.8
    top_p: float = 0.9
    marker_open: str = "<<"
    marker_close: str = ">>"
    marker_keyword: str = "MEMORY_SAVE"
    facts_note_seconds: float = 2.5  # How long the "facts saved" note stays visible
    strings: ChatStrings = Field(default_factory=ChatStrings)

    def marker_grammar(self) -> MarkerGrammar:
        return MarkerGrammar(
            open_token=self.marker_open,
            close_token=self.marker_close,
            keyword=self.marker_keyword,
        )


class Notification(BaseModel):
    """A user-facing notice, optionally offering to retry the last message."""

    message: str
    action_label: str | None = None
    retry_message: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class ChatEvent(BaseModel):
    """A change published to session subscribers.

    Event kinds:
    - ``state``: state and, when a turn ended, its outcome
    - ``turn``: the turn at ``index`` of ``conversation_id`` was added or updated
    - ``transcript``: the active conversation was replaced
    - ``conversations``: the stored conversation list was refreshed
    - ``notification``: a new notification is available
    - ``closed``: the session was closed
    """

    event: str
    state: SessionState | None = None
    outcome: TurnOutcome | None = None
    conversation_id: str | None = None
    index: int | None = None
    turn: Turn | None = None
    notification: Notification | None = None


class ChatSessionInfo(BaseModel):
    """Information about an active chat session."""

    session_id: str
    created_at: datetime
    last_activity: datetime
    conversation_id: str
    message_count: int
    state: SessionState


class ChatSessionSnapshot(BaseModel):
    """Full observable state of a chat session."""

    session_id: str
    state: SessionState
    last_outcome: TurnOutcome | None = None
    conversation_id: str
    turns: list[Turn]
    input: str = ""
    notification: Notification | None = None
    conversations: list[ConversationSummary] = Field(default_factory=list)
    facts_enabled: bool
    auto_save_enabled: bool


class CreateChatSessionRequest(BaseModel):
    """Request to create a new chat session."""

    system_prompt: str | None = Field(
        default=None,
        description="Custom system prompt for the session",
    )
    greeting: str | None = Field(
        default=None,
        description="Assistant greeting that opens new conversations (empty for none)",
    )


class SendMessageRequest(BaseModel):
    """Request to send a user message."""

    message: str
    wait: bool = Field(
        default=False,
        description="Wait for the reply to finish before responding",
    )


class SendMessageResponse(BaseModel):
    """Result of a send or retry request."""

    accepted: bool
    snapshot: ChatSessionSnapshot


class CompleteRequest(BaseModel):
    """Single-shot, non-streaming completion request."""

    message: str
    system_prompt: str | None = None


class CompleteResponse(BaseModel):
    """Single-shot completion result with memory markers removed."""

    content: str
    facts: list[str] = Field(default_factory=list)
