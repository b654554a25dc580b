"""
Tests for the call orchestrator.

Telephony, Calendar and the completion client are mocks; the CallStore is
real so delivery semantics are exercised end to end.
"""

import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from callbot.agent.schemas import InitiateCallRequest
from callbot.auth.session import SessionData
from callbot.calls.orchestrator import CallOrchestrator
from callbot.calls.store import STATUS_ENDED, STATUS_FAILED, CallStore
from callbot.llm.client import CompletionAPIError, CompletionClient, CompletionResult
from callbot.logging.config import setup_logging
from callbot.telephony.client import TelephonyError
from callbot.telephony.webhook import INITIATION_FAILURE_EVENT, TRANSCRIPTION_EVENT, CallEvent


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


def result(text: str) -> CompletionResult:
    return CompletionResult(text=text, shape="choices", latency_ms=5, model="test")


def make_llm(answers: dict) -> MagicMock:
    async def complete(prompt, max_tokens=150, purpose="unknown"):
        answer = answers.get(purpose, "")
        if isinstance(answer, Exception):
            raise answer
        return result(answer)

    llm = MagicMock(spec=CompletionClient)
    llm.complete = AsyncMock(side_effect=complete)
    return llm


def make_owner() -> SessionData:
    return SessionData(
        access_token="google-token",
        refresh_token="refresh",
        token_expires_at=time.time() + 3600,
    )


def make_telephony(call_id: str = "conv_1") -> MagicMock:
    telephony = MagicMock()
    telephony.place_call = AsyncMock(return_value=call_id)
    telephony.get_conversation = AsyncMock()
    telephony.aclose = AsyncMock()
    return telephony


def make_calendar(time_zone: str = "America/Chicago") -> MagicMock:
    calendar = MagicMock()
    calendar.get_timezone = AsyncMock(return_value=time_zone)
    calendar.insert_event = AsyncMock(return_value={"success": True, "link": "https://cal/e/1"})
    calendar.aclose = AsyncMock()
    return calendar


def make_orchestrator(answers=None, telephony=None, calendar=None) -> tuple[CallOrchestrator, CallStore]:
    store = CallStore(ttl_seconds=3600)
    telephony = telephony or make_telephony()
    calendar = calendar or make_calendar()
    orchestrator = CallOrchestrator(
        llm_client=make_llm(answers or {}),
        store=store,
        telephony_factory=lambda: telephony,
        calendar_factory=lambda token: calendar,
    )
    return orchestrator, store


def call_request(task_type: str = "lookup") -> InitiateCallRequest:
    return InitiateCallRequest.model_validate({
        "userName": "Sam",
        "userRequest": "Ask Acme where my order is",
        "phoneNumber": "+15551234567",
        "context": {"Order Number": "A-1"},
        "taskType": task_type,
    })


SUMMARY_JSON = json.dumps({
    "summary": "Sam asked about the order.",
    "result": "The order ships tomorrow.",
    "followUp": False,
    "nextAction": None,
})


async def start_call(orchestrator, store, owner=None) -> str:
    call_id = await orchestrator.initiate_call(owner or make_owner(), call_request())
    assert store.get(call_id) is not None
    return call_id


class TestInitiateCall:
    @pytest.mark.asyncio
    async def test_places_call_and_tracks_it(self):
        telephony = make_telephony("conv_42")
        orchestrator, store = make_orchestrator({"role": "Customer Service Agent"}, telephony=telephony)

        call_id = await orchestrator.initiate_call(make_owner(), call_request("scheduling"))

        assert call_id == "conv_42"
        kwargs = telephony.place_call.await_args.kwargs
        assert kwargs["to_number"] == "+15551234567"
        assert kwargs["first_message"] == "Hi, I'm calling to schedule an appointment."
        assert "Order Number: A-1" in kwargs["prompt"]
        assert kwargs["dynamic_variables"]["user_name"] == "Sam"
        assert kwargs["dynamic_variables"]["other_party_role"] == "Customer Service Agent"
        assert store.get("conv_42").task_type == "scheduling"
        telephony.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_role_failure_uses_default(self):
        telephony = make_telephony()
        orchestrator, _ = make_orchestrator({"role": CompletionAPIError(500, "down")}, telephony=telephony)

        await orchestrator.initiate_call(make_owner(), call_request())

        assert telephony.place_call.await_args.kwargs["dynamic_variables"]["other_party_role"] == "representative"

    @pytest.mark.asyncio
    async def test_vendor_error_propagates(self):
        telephony = make_telephony()
        telephony.place_call = AsyncMock(side_effect=TelephonyError("rejected", status_code=422))
        orchestrator, store = make_orchestrator(telephony=telephony)

        with pytest.raises(TelephonyError):
            await orchestrator.initiate_call(make_owner(), call_request())

        assert len(store) == 0
        telephony.aclose.assert_awaited_once()


class TestWebhookEvents:
    @pytest.mark.asyncio
    async def test_unknown_call_is_ignored(self):
        orchestrator, _ = make_orchestrator()
        event = CallEvent(event_type=TRANSCRIPTION_EVENT, call_id="nope", status="done", transcript="x")

        assert await orchestrator.handle_event(event) is False

    @pytest.mark.asyncio
    async def test_transcription_produces_summary_once(self):
        orchestrator, store = make_orchestrator({"summary": f"```json\n{SUMMARY_JSON}\n```"})
        call_id = await start_call(orchestrator, store)

        applied = await orchestrator.handle_event(CallEvent(
            event_type=TRANSCRIPTION_EVENT, call_id=call_id, status="done", transcript="agent: hi",
        ))

        assert applied is True
        assert store.get(call_id).status == STATUS_ENDED
        payload = store.pop_summary(call_id)
        assert payload["summary"] == "**Summary:**\nSam asked about the order.\n\n**Result:**\nThe order ships tomorrow."
        assert payload["calendarEvent"] is None
        assert store.pop_summary(call_id) is None

    @pytest.mark.asyncio
    async def test_duplicate_transcription_is_not_resummarized(self):
        orchestrator, store = make_orchestrator({"summary": SUMMARY_JSON})
        call_id = await start_call(orchestrator, store)
        event = CallEvent(event_type=TRANSCRIPTION_EVENT, call_id=call_id, status="done", transcript="agent: hi")

        await orchestrator.handle_event(event)
        await orchestrator.handle_event(event)

        summary_calls = [c for c in orchestrator._llm.complete.await_args_list if c.kwargs.get("purpose") == "summary"]
        assert len(summary_calls) == 1

    @pytest.mark.asyncio
    async def test_unparsable_summary_uses_fallback(self):
        orchestrator, store = make_orchestrator({"summary": "The call went fine."})
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(
            event_type=TRANSCRIPTION_EVENT, call_id=call_id, transcript="agent: hi",
        ))

        payload = store.pop_summary(call_id)
        assert "The AI summary was not in valid JSON format." in payload["summary"]
        assert payload["result"] == "Summary could not be structured."

    @pytest.mark.asyncio
    async def test_summary_llm_failure_still_delivers(self):
        orchestrator, store = make_orchestrator({"summary": CompletionAPIError(503, "down")})
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(
            event_type=TRANSCRIPTION_EVENT, call_id=call_id, transcript="agent: hi",
        ))

        assert store.pop_summary(call_id)["result"] == "Summary could not be structured."

    @pytest.mark.asyncio
    async def test_initiation_failure(self):
        orchestrator, store = make_orchestrator()
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(
            event_type=INITIATION_FAILURE_EVENT, call_id=call_id, status="failed", failure_reason="busy",
        ))

        assert store.get(call_id).status == STATUS_FAILED
        assert store.pop_summary(call_id)["result"] == "Call failed: busy"

    @pytest.mark.asyncio
    async def test_status_event(self):
        orchestrator, store = make_orchestrator()
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(event_type="status", call_id=call_id, status="in-progress"))

        call = store.get(call_id)
        assert call.status == "in-progress"
        assert call.status_pushed is True
        assert call.summary is None


class TestCalendarFollowUp:
    @pytest.mark.asyncio
    async def test_next_action_creates_event(self):
        summary = json.dumps({
            "summary": "Booked a cleaning.",
            "result": "Appointment booked.",
            "followUp": True,
            "nextAction": {
                "actionType": "create_calendar_event",
                "title": "Dental cleaning",
                "startTime": "2024-03-12T15:00:00",
                "endTime": "2024-03-12T16:00:00",
                "timeZone": "America/Chicago",
            },
        })
        calendar = make_calendar()
        orchestrator, store = make_orchestrator({"summary": summary}, calendar=calendar)
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(event_type=TRANSCRIPTION_EVENT, call_id=call_id, transcript="x"))

        action = calendar.insert_event.await_args.args[0]
        assert action.title == "Dental cleaning"
        payload = store.pop_summary(call_id)
        assert payload["calendarEvent"] == {"success": True, "link": "https://cal/e/1"}
        assert payload["followUp"] is True
        calendar.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_booking_safety_net(self):
        summary = json.dumps({"summary": "s", "result": "Appointment scheduled for Tuesday at 3pm.", "followUp": True})
        event = json.dumps({
            "title": "Appointment",
            "startTime": "2024-03-12T15:00:00",
            "endTime": "2024-03-12T16:00:00",
            "timeZone": "America/Chicago",
        })
        calendar = make_calendar()
        orchestrator, store = make_orchestrator({"summary": summary, "event_fallback": event}, calendar=calendar)
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(event_type=TRANSCRIPTION_EVENT, call_id=call_id, transcript="x"))

        calendar.insert_event.assert_awaited_once()
        payload = store.pop_summary(call_id)
        assert payload["nextAction"]["actionType"] == "create_calendar_event"
        assert payload["calendarEvent"]["success"] is True

    @pytest.mark.asyncio
    async def test_safety_net_parse_failure_skips_event(self):
        summary = json.dumps({"summary": "s", "result": "Booked it.", "followUp": False})
        calendar = make_calendar()
        orchestrator, store = make_orchestrator({"summary": summary, "event_fallback": "Tuesday"}, calendar=calendar)
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(event_type=TRANSCRIPTION_EVENT, call_id=call_id, transcript="x"))

        calendar.insert_event.assert_not_awaited()
        assert store.pop_summary(call_id)["calendarEvent"] is None

    @pytest.mark.asyncio
    async def test_uses_calendar_timezone_in_prompt(self):
        orchestrator, store = make_orchestrator({"summary": SUMMARY_JSON}, calendar=make_calendar("Asia/Tokyo"))
        call_id = await start_call(orchestrator, store)

        await orchestrator.handle_event(CallEvent(event_type=TRANSCRIPTION_EVENT, call_id=call_id, transcript="x"))

        prompt = orchestrator._llm.complete.await_args_list[-1].args[0]
        assert 'timezone is "Asia/Tokyo"' in prompt


class TestVendorPolling:
    @pytest.mark.asyncio
    async def test_finished_conversation_is_ingested(self):
        telephony = make_telephony()
        telephony.get_conversation = AsyncMock(return_value={
            "status": "done", "transcript": "agent: hi", "duration_secs": 30,
        })
        orchestrator, store = make_orchestrator({"summary": SUMMARY_JSON}, telephony=telephony)
        call_id = await start_call(orchestrator, store)

        await orchestrator.refresh_from_vendor(call_id)

        assert store.get(call_id).status == "done"
        assert store.pop_summary(call_id)["result"] == "The order ships tomorrow."

    @pytest.mark.asyncio
    async def test_finished_without_transcript_gets_summary(self):
        telephony = make_telephony()
        telephony.get_conversation = AsyncMock(return_value={
            "status": "done", "transcript": "", "duration_secs": 0,
        })
        orchestrator, store = make_orchestrator(telephony=telephony)
        call_id = await start_call(orchestrator, store)

        await orchestrator.refresh_from_vendor(call_id)
        await orchestrator.refresh_from_vendor(call_id)

        telephony.get_conversation.assert_awaited_once()
        payload = store.pop_summary(call_id)
        assert payload["result"] == "No conversation was recorded."
        assert "without a transcript" in payload["summary"]
        orchestrator._llm.complete.assert_awaited_once()  # role derivation only

    @pytest.mark.asyncio
    async def test_in_progress_leaves_summary_pending(self):
        telephony = make_telephony()
        telephony.get_conversation = AsyncMock(return_value={
            "status": "in-progress", "transcript": "", "duration_secs": None,
        })
        orchestrator, store = make_orchestrator(telephony=telephony)
        call_id = await start_call(orchestrator, store)

        await orchestrator.refresh_from_vendor(call_id)

        assert store.get(call_id).status == "in-progress"
        assert store.pop_summary(call_id) is None

    @pytest.mark.asyncio
    async def test_pushed_calls_are_not_polled(self):
        telephony = make_telephony()
        orchestrator, store = make_orchestrator(telephony=telephony)
        call_id = await start_call(orchestrator, store)
        await orchestrator.handle_event(CallEvent(event_type="status", call_id=call_id, status="in-progress"))

        await orchestrator.refresh_from_vendor(call_id)

        telephony.get_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_call_is_not_polled(self):
        telephony = make_telephony()
        orchestrator, _ = make_orchestrator(telephony=telephony)

        assert await orchestrator.refresh_from_vendor("nope") is None
        telephony.get_conversation.assert_not_awaited()


class TestWithoutOwner:
    @pytest.mark.asyncio
    async def test_summary_without_google_session(self):
        summary = json.dumps({
            "summary": "s",
            "result": "Booked.",
            "nextAction": {
                "actionType": "create_calendar_event",
                "startTime": "2024-03-12T15:00:00",
                "endTime": "2024-03-12T16:00:00",
            },
        })
        orchestrator, _ = make_orchestrator({"summary": summary})

        payload = await orchestrator.summarize_call("conv_9", "agent: hi", owner=None)

        assert payload["calendarEvent"] == {"success": False, "error": "Google account not connected"}
        prompt = orchestrator._llm.complete.await_args_list[-1].args[0]
        assert 'timezone is "UTC"' in prompt
