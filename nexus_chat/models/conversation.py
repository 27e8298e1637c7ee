"""Pydantic models for conversations and their turns."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ChatRole(str, Enum):
    """Role of a chat message sender."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Turn(BaseModel):
    """A single message in a conversation.

    Turns are frozen; the streaming assistant reply is updated by replacing
    the turn with a modified copy.
    """

    role: ChatRole
    content: str = ""
    in_progress: bool = False  # Assistant reply still streaming
    facts_saved: str | None = None  # Transient "facts saved" note

    class Config:
        use_enum_values = True
        frozen = True


class Transcript(BaseModel):
    """Ordered turns of one conversation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=datetime.now)
    turns: list[Turn] = Field(default_factory=list)

    @property
    def has_content(self) -> bool:
        """Whether any turn carries non-blank text."""
        return any(turn.content.strip() for turn in self.turns)

    @property
    def title(self) -> str:
        """Short label derived from the first user message."""
        for turn in self.turns:
            if turn.role == ChatRole.USER and turn.content.strip():
                text = " ".join(turn.content.split())
                return text if len(text) <= 60 else text[:57].rstrip() + "..."
        return ""


class ConversationSummary(BaseModel):
    """Listing entry for a stored conversation."""

    id: str
    title: str
    created_at: datetime
    turn_count: int

    @classmethod
    def from_transcript(cls, transcript: Transcript) -> "ConversationSummary":
        return cls(
            id=transcript.id,
            title=transcript.title,
            created_at=transcript.created_at,
            turn_count=len(transcript.turns),
        )
