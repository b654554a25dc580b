"""
ElevenLabs conversational-AI telephony client.

Places outbound calls through the ElevenLabs Twilio integration and reads
conversation state back for polling. Webhook parsing lives in
callbot.telephony.webhook.

Usage:
    from callbot.telephony.client import TelephonyClient

    telephony = TelephonyClient()
    call_id = await telephony.place_call(
        to_number="+15551234567",
        prompt="You are ...",
        first_message="Hi, this is Sam.",
        dynamic_variables={"user_name": "Sam"},
    )
"""

import logging
import time
from typing import Any, Optional

import httpx

from callbot.config import settings
from callbot.logging.audit import audit

logger = logging.getLogger(__name__)

# Vendor statuses meaning the conversation is still running
IN_PROGRESS_STATUSES = {"initiated", "processing", "in-progress", "in_progress"}


class TelephonyError(Exception):
    """A telephony vendor call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def transcript_to_text(transcript: Any) -> str:
    """Render a vendor transcript (list of {role, message}) as "role: message" lines."""
    if isinstance(transcript, str):
        return transcript.strip()
    if not isinstance(transcript, list):
        return ""
    lines = []
    for entry in transcript:
        if not isinstance(entry, dict):
            continue
        message = entry.get("message")
        if message:
            lines.append(f"{entry.get('role', 'unknown')}: {message}")
    return "\n".join(lines)


def _json_body(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError as e:
        raise TelephonyError("Telephony API returned a non-JSON body", status_code=resp.status_code) from e
    if not isinstance(data, dict):
        raise TelephonyError("Telephony API returned an unexpected body", status_code=resp.status_code)
    return data


class TelephonyClient:
    """Async client for the ElevenLabs conversational AI API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base = settings.elevenlabs_base_url
        self._agent_id = settings.elevenlabs_agent_id
        self._phone_number_id = settings.elevenlabs_phone_number_id
        self._http = httpx.AsyncClient(
            timeout=30.0,
            headers={
                "xi-api-key": api_key or settings.elevenlabs_api_key,
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def build_call_payload(
        self,
        to_number: str,
        prompt: str,
        first_message: str,
        dynamic_variables: dict[str, Any],
    ) -> dict:
        return {
            "agent_id": self._agent_id,
            "agent_phone_number_id": self._phone_number_id,
            "to_number": to_number,
            "conversation_initiation_client_data": {
                "dynamic_variables": dynamic_variables,
                "conversation_config_override": {
                    "agent": {
                        "prompt": {"prompt": prompt},
                        "first_message": first_message,
                    },
                },
            },
        }

    async def place_call(
        self,
        to_number: str,
        prompt: str,
        first_message: str,
        dynamic_variables: dict[str, Any],
    ) -> str:
        """
        Start an outbound call.

        Returns:
            The vendor call id (conversation_id, or callSid when absent).

        Raises:
            TelephonyError: Non-success response or missing call id.
        """
        start = time.monotonic()
        payload = self.build_call_payload(to_number, prompt, first_message, dynamic_variables)

        try:
            resp = await self._http.post(
                f"{self._base}/v1/convai/twilio/outbound-call",
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error(
                "telephony.call.transport_error",
                extra={"action": "telephony.call.transport_error", "error": str(e)},
            )
            raise TelephonyError(f"Telephony request failed: {e}") from e

        if resp.is_error:
            logger.error(
                "telephony.call.api_error",
                extra={
                    "action": "telephony.call.api_error",
                    "status_code": resp.status_code,
                    "response_body": resp.text[:500],
                },
            )
            raise TelephonyError(
                f"Telephony API error: {resp.status_code} - {resp.text}",
                status_code=resp.status_code,
            )

        data = _json_body(resp)
        call_id = data.get("conversation_id") or data.get("callSid")
        if not call_id:
            raise TelephonyError("Telephony API response carried no call id")

        audit.info(
            "telephony.call.placed",
            call_id=call_id,
            vendor_success=data.get("success"),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return call_id

    async def get_conversation(self, call_id: str) -> dict:
        """
        Read the vendor's view of a conversation.

        Returns:
            Dict with "status", "transcript" (text) and "duration_secs".
        """
        try:
            resp = await self._http.get(f"{self._base}/v1/convai/conversations/{call_id}")
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "telephony.conversation.api_error",
                extra={
                    "action": "telephony.conversation.api_error",
                    "call_id": call_id,
                    "status_code": e.response.status_code,
                    "response_body": e.response.text[:500],
                },
            )
            raise TelephonyError(
                f"Telephony API error: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise TelephonyError(f"Telephony request failed: {e}") from e

        data = _json_body(resp)
        metadata = data.get("metadata") or {}
        return {
            "status": str(data.get("status") or ""),
            "transcript": transcript_to_text(data.get("transcript")),
            "duration_secs": metadata.get("call_duration_secs"),
        }
