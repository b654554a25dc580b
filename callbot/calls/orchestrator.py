"""
Call orchestrator — places outbound calls and turns finished calls into
summaries.

Flow:
1. initiate_call: derive the recipient's role, build the caller persona,
   place the call, remember it in the CallStore
2. handle_event / refresh_from_vendor: webhook pushes (or polling, for calls
   the webhook never reached) update the call's status
3. When a transcript arrives the summary is generated once, any booked
   appointment is put on the user's calendar, and the payload waits in the
   store until the page polls for it

Usage:
    from callbot.calls.orchestrator import CallOrchestrator

    orchestrator = CallOrchestrator(llm_client=get_completion_client(), store=get_call_store())
    call_id = await orchestrator.initiate_call(session, request_body)
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from callbot.agent.engine import LookupEngine
from callbot.agent.prompts import (
    EVENT_FALLBACK_PROMPT,
    SUMMARY_FALLBACK,
    SUMMARY_PROMPT,
    build_first_message,
    build_persona_prompt,
    format_summary_text,
    implies_booking,
    parse_json_object,
)
from callbot.agent.schemas import CallSummary, InitiateCallRequest, NextAction
from callbot.auth.dependencies import refresh_if_expired
from callbot.auth.session import SessionData
from callbot.calls.store import STATUS_ENDED, STATUS_FAILED, CallSession, CallStore
from callbot.config import settings
from callbot.google.calendar import CalendarClient
from callbot.llm.client import CompletionClient, LLMError
from callbot.logging.audit import audit
from callbot.telephony.client import IN_PROGRESS_STATUSES, TelephonyClient
from callbot.telephony.webhook import INITIATION_FAILURE_EVENT, TRANSCRIPTION_EVENT, CallEvent

logger = logging.getLogger(__name__)

DEFAULT_TIME_ZONE = "UTC"
CALENDAR_ACTION = "create_calendar_event"


def _today(time_zone: str) -> str:
    try:
        now = datetime.now(ZoneInfo(time_zone))
    except (ZoneInfoNotFoundError, ValueError):
        now = datetime.now()
    return now.strftime("%a %b %d %Y")


def _summary_payload(
    call_id: str,
    summary: CallSummary,
    calendar_event: Optional[dict] = None,
) -> dict[str, Any]:
    return {
        "callId": call_id,
        "summary": format_summary_text(summary.summary, summary.result),
        "result": summary.result,
        "followUp": summary.follow_up,
        "nextAction": summary.next_action.model_dump(by_alias=True) if summary.next_action else None,
        "calendarEvent": calendar_event,
    }


class CallOrchestrator:
    """Places calls and produces their post-call summaries."""

    def __init__(
        self,
        llm_client: CompletionClient,
        store: CallStore,
        telephony_factory: Callable[[], TelephonyClient] = TelephonyClient,
        calendar_factory: Callable[[str], CalendarClient] = CalendarClient,
    ):
        self._llm = llm_client
        self._store = store
        self._engine = LookupEngine(llm_client=llm_client)
        self._telephony_factory = telephony_factory
        self._calendar_factory = calendar_factory

    # =========================================================================
    # PLACING CALLS
    # =========================================================================

    async def initiate_call(self, session: Optional[SessionData], request: InitiateCallRequest) -> str:
        """
        Place an outbound call acting as the user.

        Returns:
            The vendor call id.

        Raises:
            TelephonyError: The vendor rejected the call.
        """
        try:
            role = await self._engine.derive_other_party_role(request.user_request)
        except LLMError as e:
            logger.warning(
                "call.role_derivation_failed",
                extra={"action": "call.role_derivation_failed", "error": str(e)},
            )
            role = "representative"

        prompt = build_persona_prompt(request.user_name, request.user_request, request.context)
        first_message = build_first_message(request.user_name, request.task_type)
        dynamic_variables = {
            "user_name": request.user_name,
            "user_id": str(int(time.time() * 1000)),
            "other_party_role": role,
        }

        telephony = self._telephony_factory()
        try:
            call_id = await telephony.place_call(
                to_number=request.phone_number,
                prompt=prompt,
                first_message=first_message,
                dynamic_variables=dynamic_variables,
            )
        finally:
            await telephony.aclose()

        self._store.create(call_id, owner=session, task_type=request.task_type)
        audit.info("call.initiated", call_id=call_id, task_type=request.task_type)
        return call_id

    # =========================================================================
    # STATUS UPDATES
    # =========================================================================

    async def handle_event(self, event: CallEvent) -> bool:
        """
        Apply a webhook event. Returns False when the call is unknown.
        """
        call = self._store.get(event.call_id)
        if call is None:
            logger.info(
                "call.webhook.unknown_call",
                extra={"action": "call.webhook.unknown_call", "call_id": event.call_id,
                       "event_type": event.event_type},
            )
            return False

        if event.event_type == TRANSCRIPTION_EVENT:
            self._store.update_status(call.call_id, STATUS_ENDED)
            await self._ingest_transcript(call, event.transcript)
        elif event.event_type == INITIATION_FAILURE_EVENT:
            self._store.update_status(call.call_id, STATUS_FAILED)
            self._record_failure(call, event.failure_reason)
        elif event.status:
            self._store.update_status(call.call_id, event.status)

        audit.info("call.webhook.applied", call_id=call.call_id, event_type=event.event_type)
        return True

    async def refresh_from_vendor(self, call_id: str) -> Optional[CallSession]:
        """
        Poll the vendor for a call no webhook has reported on yet.

        Raises:
            TelephonyError: The vendor lookup failed.
        """
        call = self._store.get(call_id)
        if call is None or call.status_pushed or call.summary is not None or call.summarizing:
            return call

        telephony = self._telephony_factory()
        try:
            conversation = await telephony.get_conversation(call_id)
        finally:
            await telephony.aclose()

        status = conversation["status"] or call.status
        self._store.update_status(call_id, status, pushed=False)

        if status in IN_PROGRESS_STATUSES:
            return call

        audit.info(
            "call.vendor_finished",
            call_id=call_id,
            status=status,
            duration_secs=conversation.get("duration_secs"),
        )
        if status == STATUS_FAILED:
            self._record_failure(call, "")
        else:
            # An unanswered call finishes with an empty transcript
            await self._ingest_transcript(call, conversation["transcript"])
        return call

    def _record_failure(self, call: CallSession, reason: str) -> None:
        if call.summary is not None:
            return
        summary = CallSummary(
            summary="The call could not be completed.",
            result=f"Call failed: {reason}" if reason else "Call failed.",
        )
        self._store.set_summary(call.call_id, _summary_payload(call.call_id, summary))
        audit.warning("call.failed", call_id=call.call_id, reason=reason or "unknown")

    async def _ingest_transcript(self, call: CallSession, transcript: str) -> None:
        if call.summary is not None or call.summarizing:
            return
        call.summarizing = True
        call.transcript = transcript

        if not transcript:
            summary = CallSummary(
                summary="The call ended without a transcript.",
                result="No conversation was recorded.",
            )
            self._store.set_summary(call.call_id, _summary_payload(call.call_id, summary))
            return

        try:
            payload = await self.summarize_call(call.call_id, transcript, call.owner)
        except LLMError as e:
            logger.error(
                "call.summary.failed",
                extra={"action": "call.summary.failed", "call_id": call.call_id, "error": str(e)},
            )
            payload = _summary_payload(call.call_id, CallSummary.model_validate(SUMMARY_FALLBACK))
        except Exception:
            call.summarizing = False
            raise
        self._store.set_summary(call.call_id, payload)

    # =========================================================================
    # SUMMARIES
    # =========================================================================

    async def summarize_call(
        self,
        call_id: str,
        transcript: str,
        owner: Optional[SessionData],
    ) -> dict[str, Any]:
        """
        Summarize a transcript and book any appointment it mentions.

        Raises:
            LLMError: The summary completion failed.
        """
        start = time.monotonic()
        calendar = self._open_calendar(owner)
        try:
            time_zone = DEFAULT_TIME_ZONE
            if calendar is not None:
                time_zone = await calendar.get_timezone() or DEFAULT_TIME_ZONE

            summary = await self._structured_summary(transcript, time_zone)

            next_action = summary.next_action
            if next_action is None and implies_booking(summary.result):
                next_action = await self._event_from_result(summary.result, time_zone)
                summary.next_action = next_action

            calendar_event = None
            if next_action is not None and next_action.action_type == CALENDAR_ACTION:
                if calendar is None:
                    calendar_event = {"success": False, "error": "Google account not connected"}
                else:
                    calendar_event = await calendar.insert_event(next_action, default_time_zone=time_zone)
        finally:
            if calendar is not None:
                await calendar.aclose()

        audit.info(
            "call.summarized",
            call_id=call_id,
            follow_up=summary.follow_up,
            event_created=bool(calendar_event and calendar_event.get("success")),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return _summary_payload(call_id, summary, calendar_event)

    def _open_calendar(self, owner: Optional[SessionData]) -> Optional[CalendarClient]:
        if owner is None:
            return None
        session = refresh_if_expired(owner)
        if session is None:
            logger.warning(
                "call.summary.calendar_unavailable",
                extra={"action": "call.summary.calendar_unavailable"},
            )
            return None
        return self._calendar_factory(session.access_token)

    async def _structured_summary(self, transcript: str, time_zone: str) -> CallSummary:
        result = await self._llm.complete(
            SUMMARY_PROMPT.format(today=_today(time_zone), time_zone=time_zone, transcript=transcript),
            max_tokens=settings.llm_max_tokens_summary,
            purpose="summary",
        )
        parsed = parse_json_object(result.text)
        if parsed is not None:
            try:
                return CallSummary.model_validate(parsed)
            except ValidationError:
                pass
        logger.warning("call.summary.parse_failed", extra={"action": "call.summary.parse_failed"})
        return CallSummary.model_validate(SUMMARY_FALLBACK)

    async def _event_from_result(self, result_text: str, time_zone: str) -> Optional[NextAction]:
        """Recover event details from a result sentence like "Booked for Tuesday at 3pm"."""
        try:
            result = await self._llm.complete(
                EVENT_FALLBACK_PROMPT.format(today=_today(time_zone), time_zone=time_zone, result=result_text),
                max_tokens=settings.llm_max_tokens_event_fallback,
                purpose="event_fallback",
            )
        except LLMError as e:
            logger.warning(
                "call.event_fallback.failed",
                extra={"action": "call.event_fallback.failed", "error": str(e)},
            )
            return None

        parsed = parse_json_object(result.text)
        if parsed is None:
            logger.warning(
                "call.event_fallback.parse_failed",
                extra={"action": "call.event_fallback.parse_failed"},
            )
            return None
        try:
            action = NextAction.model_validate({**parsed, "actionType": CALENDAR_ACTION})
        except ValidationError:
            return None
        if not action.start_time or not action.end_time:
            return None
        return action
