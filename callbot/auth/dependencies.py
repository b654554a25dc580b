"""
FastAPI dependencies for authentication.
"""

import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

from callbot.auth.oauth import refresh_access_token
from callbot.auth.session import (
    SESSION_COOKIE_NAME,
    SessionData,
    get_session_from_request,
    update_session,
)
from callbot.logging.config import current_user_var

logger = logging.getLogger(__name__)


def refresh_if_expired(session: SessionData) -> Optional[SessionData]:
    """
    Return a session with a usable access token.

    The same session if it is still valid, a refreshed copy if the refresh
    token worked, or None if the user has to log in again.
    """
    if not session.is_token_expired:
        return session

    logger.info(
        "auth.token_expired_refreshing",
        extra={"action": "auth.token_expired_refreshing"},
    )
    if not session.refresh_token:
        return None

    result = refresh_access_token(session.refresh_token)
    if result is None:
        return None

    return SessionData(
        access_token=result["access_token"],
        refresh_token=result.get("refresh_token") or session.refresh_token,
        token_expires_at=result.get("expires_at") or time.time() + 3600,
        user_name=session.user_name,
        user_email=session.user_email,
        session_id=session.session_id,
    )


async def require_auth(request: Request) -> SessionData:
    """
    FastAPI dependency that ensures the user is authenticated.

    Reads session from cookie → looks up in memory → refreshes token
    if expired → sets logging context → returns SessionData.
    """
    session = get_session_from_request(request)
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    refreshed = refresh_if_expired(session)
    if refreshed is None:
        raise HTTPException(status_code=401, detail="Session expired, please log in again")

    if refreshed is not session:
        cookie = request.cookies.get(SESSION_COOKIE_NAME)
        if cookie:
            update_session(cookie, refreshed)
        logger.info("auth.token_refreshed", extra={"action": "auth.token_refreshed"})

    current_user_var.set(refreshed.user_email or refreshed.user_name or "authenticated")
    return refreshed
