"""Pydantic models for long-term user facts and memory preferences."""

from pydantic import BaseModel, Field


class MemoryPreferences(BaseModel):
    """Flags gating fact extraction and fact persistence."""

    facts_enabled: bool = True
    auto_save_enabled: bool = True


class MemoryPreferencesUpdate(BaseModel):
    """Partial update of memory preferences."""

    facts_enabled: bool | None = None
    auto_save_enabled: bool | None = None


class FactCreate(BaseModel):
    """Request model for adding a fact by hand."""

    text: str = Field(..., min_length=1, description="Fact to remember about the user")


class FactList(BaseModel):
    """Stored facts, newest first."""

    facts: list[str]
