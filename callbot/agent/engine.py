"""
Lookup engine — turns a free-form user request into call context.

This module ties together vendor derivation, the email relevance & ranking
pipeline, detail extraction and the scheduling context.

The engine does NOT talk to Google directly. It receives Gmail/Calendar
client objects, keeping it testable and decoupled from the API layer.

Usage:
    from callbot.agent.engine import LookupEngine

    engine = LookupEngine(llm_client=get_completion_client())
    vendor = await engine.derive_vendor("Check on my Acme order")
    result = await engine.find_information(gmail, vendor, "Check on my Acme order")
    details = await engine.get_email_details(gmail, result.choices[0].id, "...")
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from callbot.agent.extract import extract_content
from callbot.agent.filters import (
    clean_entity_name,
    format_message_date,
    is_relevant_verdict,
    normalize_phone_number,
)
from callbot.agent.priority import prioritize
from callbot.agent.prompts import (
    EXTRACTION_PROMPT,
    NEEDED_INFO_PROMPT,
    PHONE_PROMPT,
    RELEVANCE_PROMPT,
    ROLE_PROMPT,
    VENDOR_PROMPT,
    parse_extraction,
)
from callbot.agent.schemas import EmailDetails, EmailMessage, LookupResult, RankedChoice
from callbot.config import settings
from callbot.llm.client import CompletionClient
from callbot.logging.audit import audit

logger = logging.getLogger(__name__)


class MailSource(Protocol):
    async def list_message_ids(self, query: str, max_results: int = 50) -> list[str]: ...
    async def get_message(self, message_id: str) -> EmailMessage: ...
    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes: ...


class CalendarSource(Protocol):
    async def get_timezone(self) -> Optional[str]: ...
    async def get_busy_slots(self, days: int = 30) -> list[dict]: ...


# Candidate outcomes
RELEVANT = "relevant"
IRRELEVANT = "irrelevant"
FAILED = "failed"


@dataclass
class CandidateOutcome:
    """Result of classifying one candidate email."""
    message_id: str
    status: str
    choice: Optional[RankedChoice] = None


def build_search_query(vendor: str) -> str:
    return f"{vendor} in:inbox -category:promotions"


def format_busy_slots(busy_slots: list[dict], time_zone: Optional[str]) -> str:
    """Describe the user's busy blocks for the scheduling call persona."""
    if not busy_slots:
        return "The user's calendar is completely open."

    try:
        tz = ZoneInfo(time_zone) if time_zone else None
    except (ZoneInfoNotFoundError, ValueError):
        tz = None

    def _local(value: str) -> datetime:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed.astimezone(tz) if tz else parsed

    def _clock(dt: datetime) -> str:
        return dt.strftime("%I:%M %p").lstrip("0")

    slots = []
    for slot in busy_slots:
        try:
            start = _local(slot["start"])
            end = _local(slot["end"])
        except (KeyError, TypeError, ValueError):
            continue
        slots.append(f"from {_clock(start)} to {_clock(end)} on {start.month}/{start.day}/{start.year}")

    if not slots:
        return "The user's calendar is completely open."
    return f"The user's timezone is {time_zone}. They are busy during these times: {'; '.join(slots)}."


class LookupEngine:
    """
    Orchestrates email lookups: vendor derivation, relevance classification,
    keyword prioritization and detail extraction.
    """

    def __init__(self, llm_client: CompletionClient):
        self._llm = llm_client

    # =========================================================================
    # REQUEST UNDERSTANDING
    # =========================================================================

    async def derive_vendor(self, user_request: str) -> str:
        """The brand or company the request is about."""
        result = await self._llm.complete(
            VENDOR_PROMPT.format(user_request=user_request),
            max_tokens=settings.llm_max_tokens_vendor,
            purpose="vendor",
        )
        return clean_entity_name(result.text)

    async def derive_other_party_role(self, user_request: str) -> str:
        """Likely job title of whoever answers the call."""
        result = await self._llm.complete(
            ROLE_PROMPT.format(user_request=user_request),
            max_tokens=settings.llm_max_tokens_role,
            purpose="role",
        )
        return clean_entity_name(result.text)

    # =========================================================================
    # RELEVANCE & RANKING PIPELINE
    # =========================================================================

    async def find_information(self, gmail: MailSource, vendor: str, user_request: str) -> LookupResult:
        """
        Search the mailbox for the vendor and rank relevant emails.

        Each candidate is fetched, extracted and classified concurrently.
        A candidate that errors is excluded, never fatal to the batch, but it
        is counted separately from candidates classified irrelevant.

        Returns:
            LookupResult with needs_selection=True and up to
            max_choices_to_show choices, or a context sentence.
        """
        start = time.monotonic()
        message_ids = await gmail.list_message_ids(
            build_search_query(vendor),
            max_results=settings.gmail_max_results,
        )

        if not message_ids:
            audit.info("lookup.no_candidates", latency_ms=int((time.monotonic() - start) * 1000))
            return LookupResult(
                needs_selection=False,
                context=f'I searched your emails for "{vendor}" but couldn\'t find any messages.',
            )

        outcomes = await asyncio.gather(
            *(self._classify_candidate(gmail, message_id, user_request) for message_id in message_ids)
        )

        relevant = [o.choice for o in outcomes if o.status == RELEVANT and o.choice is not None]
        failed = sum(1 for o in outcomes if o.status == FAILED)

        audit.info(
            "lookup.classified",
            candidates=len(message_ids),
            relevant=len(relevant),
            irrelevant=len(message_ids) - len(relevant) - failed,
            failed=failed,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

        if relevant:
            ranked = prioritize(relevant)[: settings.max_choices_to_show]
            return LookupResult(
                needs_selection=True,
                choices=ranked,
                candidates=len(message_ids),
                unclassified=failed,
            )

        if failed == len(message_ids):
            logger.error(
                "lookup.all_candidates_failed",
                extra={"action": "lookup.all_candidates_failed", "candidates": failed},
            )
            context = (
                f'I found some emails from "{vendor}", but I couldn\'t analyze them '
                "right now. Please try again in a moment."
            )
        else:
            context = (
                f'I found some emails from "{vendor}", but after analysis, '
                "none seemed relevant to your request."
            )

        return LookupResult(
            needs_selection=False,
            context=context,
            candidates=len(message_ids),
            unclassified=failed,
        )

    async def _classify_candidate(self, gmail: MailSource, message_id: str, user_request: str) -> CandidateOutcome:
        try:
            message = await gmail.get_message(message_id)
            content = await extract_content(message, gmail.get_attachment)

            result = await self._llm.complete(
                RELEVANCE_PROMPT.format(
                    user_request=user_request,
                    subject=message.subject,
                    max_chars=settings.max_content_length,
                    content=content[: settings.max_content_length],
                ),
                max_tokens=settings.llm_max_tokens_relevance,
                purpose="relevance",
            )
        except Exception as e:
            logger.warning(
                "lookup.candidate.failed",
                extra={
                    "action": "lookup.candidate.failed",
                    "email_id": message_id,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            return CandidateOutcome(message_id=message_id, status=FAILED)

        if not is_relevant_verdict(result.text):
            return CandidateOutcome(message_id=message_id, status=IRRELEVANT)

        text = f"{message.subject} (from {format_message_date(message.date)})"
        return CandidateOutcome(
            message_id=message_id,
            status=RELEVANT,
            choice=RankedChoice(id=message_id, text=text),
        )

    # =========================================================================
    # DETAIL EXTRACTION
    # =========================================================================

    async def get_email_details(self, gmail: MailSource, message_id: str, user_request: str) -> EmailDetails:
        """
        Extract the fields a caller would need from the chosen email.

        Structured-output failures degrade to {"Raw Text": ...}; the phone
        number is None unless the model returned an international number.
        """
        needed = await self._llm.complete(
            NEEDED_INFO_PROMPT.format(user_request=user_request),
            max_tokens=settings.llm_max_tokens_needed_info,
            purpose="needed_info",
        )

        message = await gmail.get_message(message_id)
        content = await extract_content(message, gmail.get_attachment)

        extraction = await self._llm.complete(
            EXTRACTION_PROMPT.format(
                fields=needed.text,
                user_request=user_request,
                content=content,
            ),
            max_tokens=settings.llm_max_tokens_extraction,
            purpose="extraction",
        )
        fields = parse_extraction(extraction.text)

        phone_answer = await self._llm.complete(
            PHONE_PROMPT.format(content=content),
            max_tokens=settings.llm_max_tokens_phone,
            purpose="phone",
        )
        phone = normalize_phone_number(phone_answer.text)

        audit.info(
            "lookup.details_extracted",
            email_id=message_id,
            field_count=len(fields),
            structured="Raw Text" not in fields,
            phone_found=phone is not None,
        )

        return EmailDetails(context=fields, phone_number_from_email=phone)

    # =========================================================================
    # SCHEDULING CONTEXT
    # =========================================================================

    async def prepare_scheduling(self, calendar: CalendarSource) -> tuple[Optional[str], str]:
        """
        Describe the user's availability for a scheduling call.

        Returns:
            (time_zone, context sentence)
        """
        time_zone = await calendar.get_timezone()
        busy = await calendar.get_busy_slots(days=30)
        return time_zone, format_busy_slots(busy, time_zone)
