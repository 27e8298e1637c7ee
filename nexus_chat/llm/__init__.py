"""LLM integration: completion transport and memory-marker protocol."""

from nexus_chat.llm.client import CompletionClient, TransportError
from nexus_chat.llm.markers import (
    DEFAULT_GRAMMAR,
    ExtractionResult,
    MarkerExtractor,
    MarkerGrammar,
    extract_markers,
    sanitize_fact,
)

__all__ = [
    # Transport
    "CompletionClient",
    "TransportError",
    # Memory markers
    "DEFAULT_GRAMMAR",
    "ExtractionResult",
    "MarkerExtractor",
    "MarkerGrammar",
    "extract_markers",
    "sanitize_fact",
]
