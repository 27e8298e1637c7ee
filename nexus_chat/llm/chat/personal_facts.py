"""Pattern rules that pick stable personal facts out of user messages.

These run on the raw user text at send time, independently of any memory
markers the model emits in its reply.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from nexus_chat.llm.markers import dedupe_facts, sanitize_fact

MIN_AGE = 5
MAX_AGE = 120

ENGLISH_MONTHS = {
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
}
PORTUGUESE_MONTHS = {
    "janeiro", "fevereiro", "março", "marco", "abril", "maio", "junho", "julho",
    "agosto", "setembro", "outubro", "novembro", "dezembro",
}


@dataclass(frozen=True)
class PersonalFactRule:
    """A pattern plus a builder turning its match into a fact (or None)."""

    name: str
    pattern: re.Pattern[str]
    build: Callable[[re.Match[str]], str | None]


def _age(template: str) -> Callable[[re.Match[str]], str | None]:
    def build(match: re.Match[str]) -> str | None:
        age = int(match.group("age"))
        if not MIN_AGE <= age <= MAX_AGE:
            return None
        return template.format(age=age)

    return build


def _birthday(
    template: str, months: set[str], capitalize: bool = False
) -> Callable[[re.Match[str]], str | None]:
    def build(match: re.Match[str]) -> str | None:
        day = int(match.group("day"))
        month = match.group("month").lower()
        if not 1 <= day <= 31 or month not in months:
            return None
        return template.format(day=day, month=month.capitalize() if capitalize else month)

    return build


def _location(template: str) -> Callable[[re.Match[str]], str | None]:
    def build(match: re.Match[str]) -> str | None:
        place = sanitize_fact(match.group("place"))
        if len(place) < 3:
            return None
        return template.format(place=place)

    return build


_PLACE = r"(?P<place>[^\n\r.!?;]{3,80})"

DEFAULT_RULES: list[PersonalFactRule] = [
    PersonalFactRule(
        "age_en",
        re.compile(r"\b(?:i\s+am|i'm|im)\s+(?P<age>\d{1,3})\s*(?:years?\s+old|y/?o)\b", re.IGNORECASE),
        _age("User is {age} years old."),
    ),
    PersonalFactRule(
        "age_en_explicit",
        re.compile(r"\bmy\s+age\s+is\s+(?P<age>\d{1,3})\b", re.IGNORECASE),
        _age("User is {age} years old."),
    ),
    PersonalFactRule(
        "age_pt",
        re.compile(r"\b(?:eu\s+)?tenho\s+(?P<age>\d{1,3})\s+anos\b", re.IGNORECASE),
        _age("Usuário tem {age} anos."),
    ),
    PersonalFactRule(
        "birthday_en_day_first",
        re.compile(
            r"\bmy\s+birthday\s+is\s+(?:on\s+)?(?:the\s+)?(?P<day>\d{1,2})(?:st|nd|rd|th)?"
            r"\s+(?:of\s+)?(?P<month>[a-z]+)\b",
            re.IGNORECASE,
        ),
        _birthday("User's birthday is {month} {day}.", ENGLISH_MONTHS, capitalize=True),
    ),
    PersonalFactRule(
        "birthday_en_month_first",
        re.compile(
            r"\bmy\s+birthday\s+is\s+(?:on\s+)?(?P<month>[a-z]+)\s+(?:the\s+)?"
            r"(?P<day>\d{1,2})(?:st|nd|rd|th)?\b",
            re.IGNORECASE,
        ),
        _birthday("User's birthday is {month} {day}.", ENGLISH_MONTHS, capitalize=True),
    ),
    PersonalFactRule(
        "birthday_pt",
        re.compile(
            r"\b(?:meu\s+)?anivers[aá]rio\s*(?:é|eh)?\s*(?:dia\s+)?(?P<day>\d{1,2})"
            r"\s*(?:de\s+)?(?P<month>[a-zçãáéíóú]+)\b",
            re.IGNORECASE,
        ),
        _birthday("Aniversário do usuário é {day} de {month}.", PORTUGUESE_MONTHS),
    ),
    PersonalFactRule(
        "location_en",
        re.compile(rf"\bi\s+live\s+in\s+{_PLACE}", re.IGNORECASE),
        _location("User lives in {place}."),
    ),
    PersonalFactRule(
        "location_pt",
        re.compile(rf"\b(?:eu\s+)?moro\s+em\s+{_PLACE}", re.IGNORECASE),
        _location("Usuário mora em {place}."),
    ),
]


def extract_personal_facts(
    text: str, rules: list[PersonalFactRule] | None = None
) -> list[str]:
    """Scan a user message for personal facts worth remembering.

    Each rule contributes at most one fact (its first match).

    Returns:
        Deduplicated facts in rule order.
    """
    text = text.strip()
    if not text:
        return []

    facts = []
    for rule in rules or DEFAULT_RULES:
        match = rule.pattern.search(text)
        if match is None:
            continue
        fact = rule.build(match)
        if fact:
            facts.append(fact)
    return dedupe_facts(facts)
