"""
Authentication routes: login, callback, logout, status.
"""

import time
import secrets
import logging

from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse, HTMLResponse

from callbot.auth.oauth import build_auth_url, exchange_code
from callbot.auth.session import (
    SessionData, create_session, delete_session, get_session_from_request,
    SESSION_COOKIE_NAME, OAUTH_STATE_COOKIE_NAME,
)
from callbot.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_TRY_AGAIN = '<p><a href="/auth/login">Try again</a></p>'


def _failure_page(message: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(
        content=f"<h2>Authentication Failed</h2><p>{message}</p>{_TRY_AGAIN}",
        status_code=status_code,
    )


@router.get("/login")
async def login():
    """Redirect the user to Google's consent screen."""
    state = secrets.token_urlsafe(32)
    auth_url = build_auth_url(state=state)

    redirect = RedirectResponse(url=auth_url)
    redirect.set_cookie(
        key=OAUTH_STATE_COOKIE_NAME,
        value=state,
        max_age=600,
        httponly=True,
        secure=settings.app_env != "development",
        samesite="lax",
    )
    return redirect


@router.get("/callback")
async def callback(request: Request):
    """Handle the OAuth callback from Google."""
    code = request.query_params.get("code")
    error = request.query_params.get("error")
    state = request.query_params.get("state", "")

    if error:
        logger.error(
            "auth.callback.error",
            extra={"action": "auth.callback.error", "error": error},
        )
        return _failure_page(error, 400)

    if not code:
        logger.error("auth.callback.no_code", extra={"action": "auth.callback.no_code"})
        return _failure_page("No authorization code received.", 400)

    expected_state = request.cookies.get(OAUTH_STATE_COOKIE_NAME, "")
    if not expected_state or not secrets.compare_digest(expected_state, state):
        logger.warning(
            "auth.callback.state_mismatch",
            extra={"action": "auth.callback.state_mismatch"},
        )
        return _failure_page("Login request expired or was tampered with.", 400)

    # Exchange authorization code for tokens
    result = exchange_code(code, state)
    if result is None:
        return _failure_page(
            "Could not exchange authorization code for tokens. "
            "This may be a configuration issue (client secret or redirect URI).",
            500,
        )

    # Create session (tokens stored in server memory, session ID in cookie)
    session = SessionData(
        access_token=result["access_token"],
        refresh_token=result.get("refresh_token") or "",
        token_expires_at=result.get("expires_at") or time.time() + 3600,
    )
    cookie_value = create_session(session)

    redirect = RedirectResponse(url="/", status_code=302)
    redirect.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=cookie_value,
        max_age=settings.session_max_age_seconds,
        httponly=True,
        secure=settings.app_env != "development",
        samesite="lax",
    )
    redirect.delete_cookie(OAUTH_STATE_COOKIE_NAME)

    logger.info(
        "auth.login.success",
        extra={"action": "auth.login.success", "cookie_size": len(cookie_value)},
    )
    return redirect


@router.get("/logout")
async def logout(request: Request):
    """Clear session cookie and server-side session."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie:
        delete_session(cookie)

    redirect = RedirectResponse(url="/", status_code=302)
    redirect.delete_cookie(SESSION_COOKIE_NAME)
    logger.info("auth.logout", extra={"action": "auth.logout"})
    return redirect


@router.get("/status")
async def status(request: Request):
    """Tell the page whether Google is connected."""
    return {"authenticated": get_session_from_request(request) is not None}
