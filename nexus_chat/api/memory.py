"""Memory API endpoints: stored user facts and memory preferences."""

import logging

from fastapi import APIRouter, HTTPException

from nexus_chat.db import FactPersistError, fact_store, preference_store
from nexus_chat.llm.chat.manager import get_session_manager
from nexus_chat.models import FactCreate, FactList, MemoryPreferences, MemoryPreferencesUpdate

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/memory/facts")
async def list_facts() -> FactList:
    """List stored facts, newest first."""
    try:
        return FactList(facts=await fact_store.load_facts())
    except FactPersistError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.post("/memory/facts")
async def add_fact(request: FactCreate) -> FactList:
    """Save a fact by hand."""
    try:
        if await fact_store.add_fact(request.text) is None:
            raise HTTPException(status_code=400, detail="Fact is blank")
        return FactList(facts=await fact_store.load_facts())
    except FactPersistError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.delete("/memory/facts/{index}")
async def remove_fact(index: int) -> FactList:
    """Remove the fact at a position of the listing."""
    try:
        if not await fact_store.remove_fact_at(index):
            raise HTTPException(status_code=404, detail="Fact not found")
        return FactList(facts=await fact_store.load_facts())
    except FactPersistError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.delete("/memory/facts")
async def clear_facts() -> dict[str, int]:
    """Delete every stored fact."""
    try:
        removed = await fact_store.clear_facts()
    except FactPersistError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    logger.info(f"Cleared {removed} fact(s)")
    return {"removed": removed}


@router.get("/memory/preferences")
async def get_preferences() -> MemoryPreferences:
    """Get memory preferences."""
    return await preference_store.get_preferences()


@router.patch("/memory/preferences")
async def update_preferences(update: MemoryPreferencesUpdate) -> MemoryPreferences:
    """Update memory preferences and apply them to live sessions."""
    preferences = await preference_store.update_preferences(update)
    get_session_manager().apply_memory_settings(preferences)
    return preferences
