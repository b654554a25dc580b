"""
Tests for API routes.

Verifies that routes exist, require authentication, and return
correct status codes. Uses mocked Google/engine/orchestrator objects to
test authenticated flows.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from callbot.main import app
from callbot.agent.schemas import EmailDetails, LookupResult, RankedChoice
from callbot.auth.session import SessionData, create_session, SESSION_COOKIE_NAME
from callbot.calls.store import get_call_store
from callbot.config import settings
from callbot.logging.config import setup_logging
from callbot.telephony.client import TelephonyError


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def client():
    return TestClient(app)


def make_session() -> SessionData:
    return SessionData(
        access_token="test-access-token",
        refresh_token="test-refresh-token",
        token_expires_at=time.time() + 3600,
    )


@pytest.fixture
def owner() -> SessionData:
    return make_session()


@pytest.fixture
def auth_cookie(owner) -> dict:
    """Create a valid session cookie for testing."""
    return {SESSION_COOKIE_NAME: create_session(owner)}


@pytest.fixture
def authed(auth_cookie):
    return TestClient(app, cookies=auth_cookie)


def mock_google_client() -> MagicMock:
    google = MagicMock()
    google.aclose = AsyncMock()
    return google


class TestUnauthenticatedAccess:
    """All API endpoints should return 401 without authentication."""

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/lookup/prepare"),
        ("post", "/api/lookup/scheduling"),
        ("post", "/api/lookup/details"),
        ("post", "/api/calls"),
        ("get", "/api/calls/conv_1/status"),
        ("get", "/api/calls/conv_1/summary"),
    ])
    def test_api_requires_auth(self, client, method, path):
        resp = getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Not authenticated"

    def test_root_redirects_to_login(self):
        resp = TestClient(app, follow_redirects=False).get("/")
        assert resp.status_code == 307
        assert resp.headers["location"] == "/auth/login"


class TestHealthEndpoints:
    """Health endpoints should always be accessible."""

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_ready(self, client):
        resp = client.get("/ready")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ready"
        assert "total_calls" in data["llm"]

    def test_request_id_header(self, client):
        resp = client.get("/health")
        assert len(resp.headers["x-request-id"]) == 8


class TestPages:
    def test_index_renders(self, authed):
        resp = authed.get("/")
        assert resp.status_code == 200
        assert settings.app_name in resp.text
        assert "/static/script.js" in resp.text

    def test_static_script_is_public(self, client):
        resp = client.get("/static/script.js")
        assert resp.status_code == 200


class TestLookupRoutes:
    @patch("callbot.api.routes_lookup.LookupEngine")
    @patch("callbot.api.routes_lookup.GmailClient")
    def test_prepare_with_choices(self, mock_gmail_cls, mock_engine_cls, authed):
        gmail = mock_google_client()
        mock_gmail_cls.return_value = gmail
        engine = MagicMock()
        engine.derive_vendor = AsyncMock(return_value="Acme")
        engine.find_information = AsyncMock(return_value=LookupResult(
            needs_selection=True,
            choices=[RankedChoice(id="m1", text="Order Confirmation (from 3/5/2024)")],
            candidates=3,
        ))
        mock_engine_cls.return_value = engine

        resp = authed.post("/api/lookup/prepare", json={"userRequest": "Where is my Acme order?"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["needsSelection"] is True
        assert data["choices"] == [{"id": "m1", "text": "Order Confirmation (from 3/5/2024)"}]
        assert data["vendor"] == "Acme"
        mock_gmail_cls.assert_called_once_with(access_token="test-access-token")
        gmail.aclose.assert_awaited_once()

    @patch("callbot.api.routes_lookup.LookupEngine")
    @patch("callbot.api.routes_lookup.GmailClient")
    def test_prepare_without_candidates(self, mock_gmail_cls, mock_engine_cls, authed):
        mock_gmail_cls.return_value = mock_google_client()
        engine = MagicMock()
        engine.derive_vendor = AsyncMock(return_value="Acme")
        engine.find_information = AsyncMock(return_value=LookupResult(
            needs_selection=False,
            context='I searched your emails for "Acme" but couldn\'t find any messages.',
        ))
        mock_engine_cls.return_value = engine

        resp = authed.post("/api/lookup/prepare", json={"userRequest": "Where is my Acme order?"})

        assert resp.status_code == 200
        assert resp.json()["needsSelection"] is False
        assert "Acme" in resp.json()["context"]

    def test_prepare_validates_body(self, authed):
        resp = authed.post("/api/lookup/prepare", json={})
        assert resp.status_code == 422

    @patch("callbot.api.routes_lookup.LookupEngine")
    @patch("callbot.api.routes_lookup.GmailClient")
    def test_prepare_failure_is_500(self, mock_gmail_cls, mock_engine_cls, authed):
        gmail = mock_google_client()
        mock_gmail_cls.return_value = gmail
        engine = MagicMock()
        engine.derive_vendor = AsyncMock(side_effect=RuntimeError("llm down"))
        mock_engine_cls.return_value = engine

        resp = authed.post("/api/lookup/prepare", json={"userRequest": "x"})

        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to search emails"
        gmail.aclose.assert_awaited_once()

    @patch("callbot.api.routes_lookup.LookupEngine")
    @patch("callbot.api.routes_lookup.CalendarClient")
    def test_scheduling(self, mock_calendar_cls, mock_engine_cls, authed):
        mock_calendar_cls.return_value = mock_google_client()
        engine = MagicMock()
        engine.prepare_scheduling = AsyncMock(return_value=("UTC", "The user's calendar is completely open."))
        mock_engine_cls.return_value = engine

        resp = authed.post("/api/lookup/scheduling")

        assert resp.status_code == 200
        assert resp.json() == {
            "taskType": "scheduling",
            "needsSelection": False,
            "timeZone": "UTC",
            "context": "The user's calendar is completely open.",
        }

    @patch("callbot.api.routes_lookup.LookupEngine")
    @patch("callbot.api.routes_lookup.GmailClient")
    def test_details(self, mock_gmail_cls, mock_engine_cls, authed):
        mock_gmail_cls.return_value = mock_google_client()
        engine = MagicMock()
        engine.get_email_details = AsyncMock(return_value=EmailDetails(
            context={"Order Number": "42"},
            phone_number_from_email="+15551234567",
        ))
        mock_engine_cls.return_value = engine

        resp = authed.post("/api/lookup/details", json={"messageId": "m1", "userRequest": "refund"})

        assert resp.status_code == 200
        assert resp.json()["context"] == {"Order Number": "42"}
        assert resp.json()["phoneNumberFromEmail"] == "+15551234567"
        engine.get_email_details.assert_awaited_once()


CALL_BODY = {
    "userName": "Sam",
    "userRequest": "Ask Acme where my order is",
    "phoneNumber": "+15551234567",
    "context": "Order 42",
}


class TestCallRoutes:
    @patch("callbot.api.routes_calls._get_orchestrator")
    def test_initiate(self, mock_get, authed):
        orchestrator = MagicMock()
        orchestrator.initiate_call = AsyncMock(return_value="conv_1")
        mock_get.return_value = orchestrator

        resp = authed.post("/api/calls", json=CALL_BODY)

        assert resp.status_code == 200
        assert resp.json()["callId"] == "conv_1"

    @patch("callbot.api.routes_calls._get_orchestrator")
    def test_initiate_vendor_error(self, mock_get, authed):
        orchestrator = MagicMock()
        orchestrator.initiate_call = AsyncMock(side_effect=TelephonyError("rejected", status_code=422))
        mock_get.return_value = orchestrator

        resp = authed.post("/api/calls", json=CALL_BODY)

        assert resp.status_code == 502
        assert resp.json()["detail"] == "Failed to initiate call"

    def test_status_unknown_call_is_pending(self, authed):
        resp = authed.get("/api/calls/never-placed/status")
        assert resp.status_code == 202

    def test_status_known_call(self, authed, owner):
        store = get_call_store()
        store.create("conv_status", owner=owner)
        store.update_status("conv_status", "in-progress")

        resp = authed.get("/api/calls/conv_status/status")

        assert resp.status_code == 200
        assert resp.json() == {"callId": "conv_status", "status": "in-progress"}

    def test_summary_pending(self, authed, owner):
        store = get_call_store()
        store.create("conv_pending", owner=owner)
        store.update_status("conv_pending", "in-progress")

        resp = authed.get("/api/calls/conv_pending/summary")

        assert resp.status_code == 202

    def test_summary_delivered_once(self, authed, owner):
        store = get_call_store()
        store.create("conv_done", owner=owner)
        store.update_status("conv_done", "ended")
        store.set_summary("conv_done", {"callId": "conv_done", "summary": "**Summary:**\nok"})

        first = authed.get("/api/calls/conv_done/summary")
        second = authed.get("/api/calls/conv_done/summary")

        assert first.status_code == 200
        assert first.json()["summary"] == "**Summary:**\nok"
        assert second.status_code == 202

    def test_other_session_cannot_read_call(self, authed, owner):
        store = get_call_store()
        store.create("conv_private", owner=owner)
        store.update_status("conv_private", "ended")
        store.set_summary("conv_private", {"callId": "conv_private", "summary": "private"})
        other = TestClient(app, cookies={SESSION_COOKIE_NAME: create_session(make_session())})

        status = other.get("/api/calls/conv_private/status")
        summary = other.get("/api/calls/conv_private/summary")

        assert status.status_code == 202
        assert status.json() == {"callId": "conv_private", "status": "pending"}
        assert summary.status_code == 202
        assert summary.json() == {"callId": "conv_private", "status": "pending"}

        delivered = authed.get("/api/calls/conv_private/summary")
        assert delivered.status_code == 200
        assert delivered.json()["summary"] == "private"


class TestWebhook:
    def test_unknown_call_acknowledged(self, client):
        resp = client.post("/webhooks/call", json={
            "type": "call_initiation_failure",
            "data": {"conversation_id": "unknown-call"},
        })
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "applied": False}

    def test_failure_event_makes_summary_available(self, client, authed, owner):
        get_call_store().create("conv_fail", owner=owner)

        resp = client.post("/webhooks/call", json={
            "type": "call_initiation_failure",
            "data": {"conversation_id": "conv_fail", "failure_reason": "no-answer"},
        })

        assert resp.json()["applied"] is True
        summary = authed.get("/api/calls/conv_fail/summary")
        assert summary.status_code == 200
        assert summary.json()["result"] == "Call failed: no-answer"

    def test_malformed_event(self, client):
        resp = client.post("/webhooks/call", content=b"not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_signature_required_when_secret_set(self, client):
        body = json.dumps({"type": "status", "data": {"conversation_id": "c", "status": "x"}}).encode()
        timestamp = int(time.time())
        digest = hmac.new(b"s3cret", f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()

        with patch.object(settings, "elevenlabs_webhook_secret", "s3cret"):
            unsigned = client.post("/webhooks/call", content=body)
            signed = client.post(
                "/webhooks/call",
                content=body,
                headers={"ElevenLabs-Signature": f"t={timestamp},v0={digest}"},
            )

        assert unsigned.status_code == 401
        assert signed.status_code == 200
