"""
Filters applied to raw LLM answers.

The completion API answers in free text even when asked for one word, so
these helpers decide what an answer actually means.
"""

import re
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional

# Verdicts that mean "not relevant". Checked before the positive match
# because "irrelevant" contains "relevant".
NEGATIVE_VERDICTS = ("irrelevant", "not relevant", "not_relevant")

E164_PATTERN = re.compile(r"\+\d{7,15}")


def is_relevant_verdict(answer: str) -> bool:
    """
    Interpret a relevance classification answer.

    "Relevant" → True; "Irrelevant", "Not relevant", or anything without
    the word → False.
    """
    normalized = answer.strip().strip("\"'.").lower()
    if any(neg in normalized for neg in NEGATIVE_VERDICTS):
        return False
    return "relevant" in normalized


def normalize_phone_number(answer: Optional[str]) -> Optional[str]:
    """
    Keep a phone number only if it is in international (+) format.

    The model sometimes wraps the number in prose; the first +digits run is
    taken. Answers like "Not Found" yield None.
    """
    if not answer:
        return None
    candidate = answer.strip()
    if not candidate.startswith("+"):
        return None
    match = E164_PATTERN.match(re.sub(r"[\s\-().]", "", candidate))
    return match.group(0) if match else None


def clean_entity_name(answer: str) -> str:
    """Strip quotes, trailing punctuation and labels from a one-entity answer."""
    name = answer.strip().splitlines()[0] if answer.strip() else ""
    if ":" in name:
        name = name.split(":", 1)[1]
    return name.strip().strip("\"'`*").rstrip(".!").strip()


def format_message_date(raw_date: str) -> str:
    """Render an RFC 2822 Date header as M/D/YYYY, or "Unknown Date"."""
    if not raw_date:
        return "Unknown Date"
    try:
        parsed: datetime = parsedate_to_datetime(raw_date)
    except (TypeError, ValueError):
        return "Unknown Date"
    return f"{parsed.month}/{parsed.day}/{parsed.year}"
