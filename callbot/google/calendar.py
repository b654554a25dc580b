"""
Google Calendar REST API client.

Reads the user's timezone setting and free/busy blocks for the scheduling
pathway, and inserts follow-up events booked during a call.

Read helpers degrade gracefully (None / empty list) because the calling
flows can still proceed without calendar data. Event insertion reports
success or failure to the caller instead of raising.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from callbot.agent.schemas import NextAction
from callbot.config import settings
from callbot.logging.audit import audit

logger = logging.getLogger(__name__)


class CalendarClient:
    """Async Calendar client bound to one user's access token."""

    def __init__(self, access_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base = settings.calendar_base_url
        self._http = httpx.AsyncClient(
            timeout=30.0,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get_timezone(self) -> Optional[str]:
        """The user's calendar timezone (IANA name), or None if unavailable."""
        try:
            resp = await self._http.get(f"{self._base}/users/me/settings/timezone")
            resp.raise_for_status()
            return resp.json().get("value") or None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "calendar.timezone.failed",
                extra={"action": "calendar.timezone.failed", "error": str(e)},
            )
            return None

    async def get_busy_slots(self, days: int = 30) -> list[dict]:
        """
        Busy intervals on the primary calendar from now until `days` ahead.

        Returns:
            List of {"start": ISO 8601, "end": ISO 8601} dicts; empty on error.
        """
        now = datetime.now(timezone.utc)
        body = {
            "timeMin": now.isoformat(),
            "timeMax": (now + timedelta(days=days)).isoformat(),
            "items": [{"id": "primary"}],
        }
        try:
            resp = await self._http.post(f"{self._base}/freeBusy", json=body)
            resp.raise_for_status()
            calendars = resp.json().get("calendars") or {}
            busy = (calendars.get("primary") or {}).get("busy") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "calendar.freebusy.failed",
                extra={"action": "calendar.freebusy.failed", "error": str(e)},
            )
            return []

        audit.info("calendar.freebusy.fetched", busy_slots=len(busy), days=days)
        return busy

    async def insert_event(self, action: NextAction, default_time_zone: Optional[str] = None) -> dict:
        """
        Create an event on the primary calendar.

        Returns:
            {"success": True, "link": htmlLink} or {"success": False, "error": str}.
        """
        tz = action.time_zone or default_time_zone
        event = {
            "summary": action.title,
            "description": action.description or "Scheduled by the call assistant.",
            "start": {"dateTime": action.start_time},
            "end": {"dateTime": action.end_time},
        }
        if tz:
            event["start"]["timeZone"] = tz
            event["end"]["timeZone"] = tz

        try:
            resp = await self._http.post(
                f"{self._base}/calendars/primary/events",
                json=event,
            )
            resp.raise_for_status()
            link = resp.json().get("htmlLink", "")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "calendar.event.insert_failed",
                extra={
                    "action": "calendar.event.insert_failed",
                    "error": str(e),
                    "status_code": getattr(e, "response", None) and e.response.status_code,
                },
            )
            return {"success": False, "error": str(e)}

        audit.info("calendar.event.created", time_zone=tz or "unspecified")
        return {"success": True, "link": link}
