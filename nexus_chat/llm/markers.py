"""Memory-save markers embedded in streamed model output.

The model may ask the client to remember a fact by emitting a marker such as
``<<MEMORY_SAVE: likes green tea>>`` anywhere in its reply. Markers must never
reach the user, even while the reply is still streaming, so extraction is a
strict two-phase parse over the whole accumulated buffer:

1. Remove every complete marker and collect its sanitized payload.
2. Hide a trailing marker that has been opened but not yet closed.

Extraction is pure: running it repeatedly on a growing buffer is expected.
"""

import functools
import re
from dataclasses import dataclass, field

_HEADING_PREFIX = re.compile(r"^\s*#+\s*")
_BULLET_PREFIX = re.compile(r"^\s*[-*•]+\s*")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RUN = re.compile(r"\s+")
_BLANK_LINE_RUN = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class MarkerGrammar:
    """Delimiters and keyword that make up a memory-save marker."""

    open_token: str = "<<"
    close_token: str = ">>"
    keyword: str = "MEMORY_SAVE"

    def __post_init__(self) -> None:
        if not self.open_token or not self.close_token or not self.keyword:
            raise ValueError("Marker tokens and keyword must be non-empty")

    @property
    def delimiter_chars(self) -> frozenset[str]:
        """Characters that may never appear inside a stored fact."""
        return frozenset(self.open_token + self.close_token + "`")

    def format(self, payload: str) -> str:
        """Render a marker the way the model is asked to write it."""
        return f"{self.open_token}{self.keyword}: {payload}{self.close_token}"


DEFAULT_GRAMMAR = MarkerGrammar()


@functools.lru_cache(maxsize=8)
def _patterns(grammar: MarkerGrammar) -> tuple[re.Pattern[str], re.Pattern[str]]:
    """Compile (complete marker, opening sequence) patterns for a grammar."""
    opening = rf"{re.escape(grammar.open_token)}\s*{re.escape(grammar.keyword)}\s*:"
    complete = re.compile(
        rf"{opening}\s*(.*?)\s*{re.escape(grammar.close_token)}",
        re.IGNORECASE | re.DOTALL,
    )
    return complete, re.compile(opening, re.IGNORECASE)


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of one extraction pass."""

    visible: str
    facts: list[str] = field(default_factory=list)


def dedupe_facts(facts: list[str]) -> list[str]:
    """Drop case-insensitive duplicates, keeping first-seen order."""
    seen: set[str] = set()
    unique = []
    for fact in facts:
        key = fact.casefold()
        if key in seen:
            continue
        seen.add(key)
        unique.append(fact)
    return unique


def sanitize_fact(raw: str, grammar: MarkerGrammar = DEFAULT_GRAMMAR) -> str:
    """Clean a marker payload into a storable fact.

    Strips markdown heading/bullet prefixes, the marker's own delimiter
    characters and control characters, then collapses whitespace.

    Returns:
        The cleaned fact, or an empty string when nothing meaningful remains.
    """
    text = raw.strip()
    text = _HEADING_PREFIX.sub("", text)
    text = _BULLET_PREFIX.sub("", text)
    text = "".join(ch for ch in text if ch not in grammar.delimiter_chars)
    text = _CONTROL_CHARS.sub(" ", text)
    return _WHITESPACE_RUN.sub(" ", text).strip()


def normalize_whitespace(text: str) -> str:
    """Trim trailing spaces per line and collapse runs of blank lines."""
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return _BLANK_LINE_RUN.sub("\n\n", text).strip()


def extract_markers(buffer: str, grammar: MarkerGrammar = DEFAULT_GRAMMAR) -> ExtractionResult:
    """Split an accumulated reply into visible text and requested facts.

    Args:
        buffer: The full reply received so far, not just the latest delta.
        grammar: Marker delimiters and keyword.

    Returns:
        ExtractionResult with the text safe to show and the deduplicated facts
        of every complete marker, in order of appearance.
    """
    if grammar.keyword.casefold() not in buffer.casefold():
        return ExtractionResult(visible=buffer)

    complete, opening = _patterns(grammar)
    facts: list[str] = []

    def _collect(match: re.Match[str]) -> str:
        fact = sanitize_fact(match.group(1), grammar)
        if fact:
            facts.append(fact)
        return ""

    # Removing one marker can splice the halves of another together, so
    # repeat until nothing matches.
    text = buffer
    while True:
        cleaned = complete.sub(_collect, text)
        if cleaned == text:
            break
        text = cleaned

    text = normalize_whitespace(text)

    # Anything left that opens a marker is still being streamed.
    partial = opening.search(text)
    if partial:
        text = text[: partial.start()].strip()

    return ExtractionResult(visible=text, facts=dedupe_facts(facts))


class MarkerExtractor:
    """Stateless extractor bound to one marker grammar."""

    def __init__(self, grammar: MarkerGrammar | None = None):
        self.grammar = grammar or DEFAULT_GRAMMAR

    def extract(self, buffer: str) -> ExtractionResult:
        return extract_markers(buffer, self.grammar)

    def sanitize(self, raw: str) -> str:
        return sanitize_fact(raw, self.grammar)

    def instruction_example(self) -> str:
        return self.grammar.format("...")
