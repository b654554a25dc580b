"""
Gmail REST API client (read-only).

- Bearer-token auth from the user's session (token refresh is handled by
  the auth layer, not here)
- Structured logging on every API call
- Typed return values (EmailMessage with its MIME part tree)

The lookup engine receives this client and never builds URLs itself.

Usage:
    from callbot.google.gmail import GmailClient

    gmail = GmailClient(access_token="ya29...")
    ids = await gmail.list_message_ids("acme in:inbox", max_results=50)
    message = await gmail.get_message(ids[0])
    await gmail.aclose()
"""

import base64
import logging
import time
from typing import Optional

import httpx

from callbot.agent.schemas import EmailMessage, MessagePart
from callbot.config import settings
from callbot.logging.audit import audit

logger = logging.getLogger(__name__)


class GoogleAPIError(Exception):
    """A Google REST call failed."""

    def __init__(self, operation: str, status_code: Optional[int], detail: str):
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} failed (HTTP {status_code}): {detail}")


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's unpadded base64url payloads."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class GmailClient:
    """Async Gmail client bound to one user's access token."""

    def __init__(self, access_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base = settings.gmail_base_url
        self._http = httpx.AsyncClient(
            timeout=30.0,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client. Call when done."""
        await self._http.aclose()

    async def _get(self, operation: str, url: str, params: Optional[dict] = None) -> dict:
        try:
            resp = await self._http.get(url, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"gmail.{operation}.error",
                extra={
                    "action": f"gmail.{operation}.error",
                    "status_code": e.response.status_code,
                    "response_body": e.response.text[:500],
                },
            )
            raise GoogleAPIError(operation, e.response.status_code, e.response.text[:200]) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                f"gmail.{operation}.error",
                extra={"action": f"gmail.{operation}.error", "error": str(e)},
            )
            raise GoogleAPIError(operation, None, str(e)) from e

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def list_message_ids(self, query: str, max_results: int = 50) -> list[str]:
        """
        List ids of messages matching a Gmail search query.

        Only the first page is read; max_results bounds the candidate set.
        """
        start = time.monotonic()
        data = await self._get(
            "list_messages",
            f"{self._base}/users/me/messages",
            params={"q": query, "maxResults": max_results},
        )
        ids = [m["id"] for m in data.get("messages", []) if m.get("id")][:max_results]

        audit.info(
            "gmail.messages.listed",
            matched=len(ids),
            max_results=max_results,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return ids

    async def get_message(self, message_id: str) -> EmailMessage:
        """Fetch a full message, including its MIME part tree."""
        data = await self._get(
            "get_message",
            f"{self._base}/users/me/messages/{message_id}",
            params={"format": "full"},
        )
        return self.parse_message(data)

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Fetch and decode one attachment body."""
        data = await self._get(
            "get_attachment",
            f"{self._base}/users/me/messages/{message_id}/attachments/{attachment_id}",
        )
        raw = data.get("data") or ""
        return decode_base64url(raw)

    # =========================================================================
    # PARSING
    # =========================================================================

    @staticmethod
    def _parse_part(part: dict) -> MessagePart:
        body = part.get("body") or {}
        return MessagePart(
            mime_type=str(part.get("mimeType") or ""),
            filename=str(part.get("filename") or ""),
            data=body.get("data") or None,
            attachment_id=body.get("attachmentId") or None,
            parts=[GmailClient._parse_part(p) for p in part.get("parts") or [] if isinstance(p, dict)],
        )

    @staticmethod
    def parse_message(msg: dict) -> EmailMessage:
        """Parse a raw Gmail message resource into an EmailMessage."""
        payload = msg.get("payload") or {}
        headers = {
            str(h.get("name", "")).lower(): str(h.get("value", ""))
            for h in payload.get("headers") or []
            if isinstance(h, dict)
        }
        return EmailMessage(
            id=str(msg.get("id") or ""),
            snippet=str(msg.get("snippet") or ""),
            subject=headers.get("subject") or "No Subject",
            date=headers.get("date", ""),
            payload=GmailClient._parse_part(payload),
        )
