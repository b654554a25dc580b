"""
Telephony webhook parsing and signature verification.

ElevenLabs posts JSON events of the form
    {"type": "...", "event_timestamp": 1700000000, "data": {"conversation_id": ..., ...}}
and, when a webhook secret is configured, signs them with
    ElevenLabs-Signature: t=<unix ts>,v0=<hex HMAC-SHA256 of "<ts>.<raw body>">
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Optional

from callbot.telephony.client import transcript_to_text

# Event types
TRANSCRIPTION_EVENT = "post_call_transcription"
INITIATION_FAILURE_EVENT = "call_initiation_failure"

SIGNATURE_TOLERANCE_SECONDS = 30 * 60


class WebhookError(Exception):
    """The webhook request is malformed or its signature is invalid."""
    pass


@dataclass
class CallEvent:
    """A normalized telephony event."""
    event_type: str
    call_id: str
    status: str = ""
    transcript: str = ""
    failure_reason: str = ""


def verify_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    now: Optional[float] = None,
) -> None:
    """
    Check the HMAC signature header.

    Raises:
        WebhookError: Missing, stale or mismatched signature.
    """
    if not header:
        raise WebhookError("Missing signature header")

    fields = dict(
        item.split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp = fields.get("t", "")
    signature = fields.get("v0", "")
    if not timestamp.isdigit() or not signature:
        raise WebhookError("Malformed signature header")

    current = time.time() if now is None else now
    if abs(current - int(timestamp)) > SIGNATURE_TOLERANCE_SECONDS:
        raise WebhookError("Stale signature timestamp")

    signed = f"{timestamp}.".encode() + raw_body
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookError("Signature mismatch")


def parse_event(payload: Any) -> CallEvent:
    """
    Normalize a webhook payload.

    Raises:
        WebhookError: No event type or call id.
    """
    if not isinstance(payload, dict):
        raise WebhookError("Webhook body must be a JSON object")

    event_type = str(payload.get("type") or "")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        data = {}

    call_id = str(data.get("conversation_id") or data.get("call_sid") or "")
    if not event_type or not call_id:
        raise WebhookError("Webhook event needs a type and a conversation id")

    status = str(data.get("status") or "")
    if event_type == TRANSCRIPTION_EVENT and not status:
        status = "done"
    if event_type == INITIATION_FAILURE_EVENT:
        status = "failed"

    return CallEvent(
        event_type=event_type,
        call_id=call_id,
        status=status,
        transcript=transcript_to_text(data.get("transcript")),
        failure_reason=str(data.get("failure_reason") or ""),
    )
