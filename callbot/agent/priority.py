"""
Keyword priority for relevant email choices.

Choices whose display text mentions a transactional keyword (order,
receipt, booking, ...) are shown before the rest. This is a stable
partition: relative order inside each group is preserved.

Usage:
    from callbot.agent.priority import prioritize
    ordered = prioritize(choices)[:5]
"""

from callbot.agent.schemas import RankedChoice

PRIORITY_KEYWORDS = (
    "order",
    "confirmation",
    "receipt",
    "invoice",
    "booking",
    "reservation",
)


def has_priority_keyword(text: str, keywords: tuple[str, ...] = PRIORITY_KEYWORDS) -> bool:
    """Case-insensitive substring match against the keyword set."""
    lowered = text.lower()
    return any(kw in lowered for kw in keywords)


def prioritize(
    choices: list[RankedChoice],
    keywords: tuple[str, ...] = PRIORITY_KEYWORDS,
) -> list[RankedChoice]:
    """Move keyword-bearing choices to the front, keeping relative order."""
    # sorted() is stable, so False (has keyword) < True keeps each group in order
    return sorted(choices, key=lambda c: not has_priority_keyword(c.text, keywords))
