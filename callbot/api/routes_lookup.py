"""
Lookup API routes.

These endpoints build the context a call needs before it is placed:
- Searching the mailbox for emails about the request's vendor
- Describing the user's calendar availability for scheduling calls
- Extracting order details and a phone number from a chosen email
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from callbot.auth.dependencies import require_auth
from callbot.auth.session import SessionData
from callbot.google.gmail import GmailClient
from callbot.google.calendar import CalendarClient
from callbot.agent.engine import LookupEngine
from callbot.agent.schemas import LookupRequest, DetailsRequest
from callbot.llm.client import get_completion_client
from callbot.logging.audit import audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lookup", tags=["lookup"])


def _get_gmail(session: SessionData) -> GmailClient:
    return GmailClient(access_token=session.access_token)


def _get_calendar(session: SessionData) -> CalendarClient:
    return CalendarClient(access_token=session.access_token)


def _get_engine() -> LookupEngine:
    return LookupEngine(llm_client=get_completion_client())


@router.post("/prepare")
async def prepare_lookup(
    request: LookupRequest,
    session: SessionData = Depends(require_auth),
):
    """
    Find the emails a lookup call should be about.

    Request body:
    {"userRequest": "Ask Acme where my order is"}

    Returns either a list of choices for the user to pick from, or a
    context sentence the call can use directly.
    """
    gmail = _get_gmail(session)
    engine = _get_engine()

    try:
        vendor = await engine.derive_vendor(request.user_request)
        result = await engine.find_information(gmail, vendor, request.user_request)

        audit.info(
            "lookup.prepared",
            needs_selection=result.needs_selection,
            choices=len(result.choices),
            unclassified=result.unclassified,
        )

        return {
            "taskType": "lookup",
            "vendor": vendor,
            "needsSelection": result.needs_selection,
            "choices": [c.model_dump() for c in result.choices],
            "context": result.context,
            "unclassified": result.unclassified,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "lookup.prepare_failed",
            extra={"action": "lookup.prepare_failed", "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Failed to search emails")
    finally:
        await gmail.aclose()


@router.post("/scheduling")
async def prepare_scheduling(session: SessionData = Depends(require_auth)):
    """Describe the user's busy times for a scheduling call."""
    calendar = _get_calendar(session)
    engine = _get_engine()

    try:
        time_zone, context = await engine.prepare_scheduling(calendar)
        return {
            "taskType": "scheduling",
            "needsSelection": False,
            "timeZone": time_zone,
            "context": context,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "lookup.scheduling_failed",
            extra={"action": "lookup.scheduling_failed", "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Failed to read calendar availability")
    finally:
        await calendar.aclose()


@router.post("/details")
async def email_details(
    request: DetailsRequest,
    session: SessionData = Depends(require_auth),
):
    """
    Extract call context from the email the user picked.

    Request body:
    {"messageId": "18c2...", "userRequest": "Ask Acme where my order is"}
    """
    gmail = _get_gmail(session)
    engine = _get_engine()

    try:
        details = await engine.get_email_details(gmail, request.message_id, request.user_request)
        return {
            "taskType": "lookup",
            "context": details.context,
            "phoneNumberFromEmail": details.phone_number_from_email,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "lookup.details_failed",
            extra={"action": "lookup.details_failed", "email_id": request.message_id, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Failed to get email details")
    finally:
        await gmail.aclose()
