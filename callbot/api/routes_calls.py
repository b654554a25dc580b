"""
Call API routes.

- Placing an outbound call on the user's behalf
- Polling a call's status and its post-call summary
- Receiving telephony webhook events (separate router, no login session)

The page polls /status and /summary every few seconds. Both answer 202
while there is nothing new to report; a summary is handed out exactly once.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from callbot.auth.dependencies import require_auth
from callbot.auth.session import SessionData
from callbot.agent.schemas import InitiateCallRequest
from callbot.calls.orchestrator import CallOrchestrator
from callbot.calls.store import get_call_store
from callbot.config import settings
from callbot.llm.client import get_completion_client
from callbot.telephony.client import TelephonyError
from callbot.telephony.webhook import WebhookError, parse_event, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calls", tags=["calls"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "ElevenLabs-Signature"


def _get_orchestrator() -> CallOrchestrator:
    return CallOrchestrator(llm_client=get_completion_client(), store=get_call_store())


def _pending(call_id: str, status: str = "pending") -> JSONResponse:
    return JSONResponse(status_code=202, content={"callId": call_id, "status": status})


async def _refresh(orchestrator: CallOrchestrator, call_id: str) -> None:
    try:
        await orchestrator.refresh_from_vendor(call_id)
    except TelephonyError as e:
        # Next poll tries again; the webhook may also still arrive
        logger.warning(
            "call.poll_failed",
            extra={"action": "call.poll_failed", "call_id": call_id, "error": str(e)},
        )


@router.post("")
async def initiate_call(
    request: InitiateCallRequest,
    session: SessionData = Depends(require_auth),
):
    """
    Place an outbound call.

    Request body:
    {
        "userName": "Sam",
        "userRequest": "Ask Acme where my order is",
        "phoneNumber": "+15551234567",
        "context": {"Order Number": "A-1001"},
        "taskType": "lookup"
    }
    """
    orchestrator = _get_orchestrator()
    try:
        call_id = await orchestrator.initiate_call(session, request)
        return {"message": "Call initiated successfully!", "callId": call_id}

    except HTTPException:
        raise
    except TelephonyError as e:
        logger.error(
            "call.initiate_failed",
            extra={"action": "call.initiate_failed", "status_code": e.status_code, "error": str(e)},
        )
        raise HTTPException(status_code=502, detail="Failed to initiate call")
    except Exception as e:
        logger.error(
            "call.initiate_failed",
            extra={"action": "call.initiate_failed", "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Failed to initiate call")


@router.get("/{call_id}/status")
async def call_status(call_id: str, session: SessionData = Depends(require_auth)):
    """200 with the latest status once the call is known, 202 otherwise."""
    store = get_call_store()
    if store.get_owned(call_id, session.session_id) is None:
        return _pending(call_id)

    await _refresh(_get_orchestrator(), call_id)

    call = store.get(call_id)
    if call is None:
        return _pending(call_id)
    return {"callId": call_id, "status": call.status}


@router.get("/{call_id}/summary")
async def call_summary(call_id: str, session: SessionData = Depends(require_auth)):
    """
    200 with the summary payload the first time it is ready, 202 otherwise.

    Delivery removes the call, so a second read answers 202. Calls placed
    from another login session answer 202 as if unknown.
    """
    store = get_call_store()
    if store.get_owned(call_id, session.session_id) is None:
        return _pending(call_id)

    await _refresh(_get_orchestrator(), call_id)

    payload = store.pop_summary(call_id)
    if payload is None:
        call = store.get(call_id)
        return _pending(call_id, call.status if call else "pending")

    logger.info("call.summary_delivered", extra={"action": "call.summary_delivered", "call_id": call_id})
    return payload


@webhook_router.post("/call")
async def call_webhook(request: Request):
    """Receive a telephony event. Unknown calls are acknowledged and ignored."""
    raw_body = await request.body()

    if settings.elevenlabs_webhook_secret:
        try:
            verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), settings.elevenlabs_webhook_secret)
        except WebhookError as e:
            logger.warning(
                "call.webhook.rejected",
                extra={"action": "call.webhook.rejected", "reason": str(e)},
            )
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = parse_event(json.loads(raw_body or b"null"))
    except (ValueError, WebhookError) as e:
        logger.warning(
            "call.webhook.malformed",
            extra={"action": "call.webhook.malformed", "reason": str(e)},
        )
        raise HTTPException(status_code=400, detail="Malformed webhook event")

    try:
        applied = await _get_orchestrator().handle_event(event)
    except Exception as e:
        logger.error(
            "call.webhook.failed",
            extra={"action": "call.webhook.failed", "call_id": event.call_id, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Failed to process webhook event")

    return {"received": True, "applied": applied}
