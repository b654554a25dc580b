"""
Google OAuth 2.0 authorization code flow.

1. User clicks "Connect Google" → redirected to Google's consent screen
2. Google redirects back to /auth/callback with an authorization code
3. We exchange the code for access_token + refresh_token
4. Tokens stored server-side; an encrypted session id goes in a cookie
5. On subsequent requests, the auth dependency silently refreshes expired
   tokens

Usage:
    from callbot.auth.oauth import build_auth_url, exchange_code, refresh_access_token
"""

import logging
from datetime import timezone
from typing import Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from callbot.config import settings

logger = logging.getLogger(__name__)

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _client_config() -> dict:
    return {
        "web": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "redirect_uris": [settings.google_redirect_uri],
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
        }
    }


def _build_flow(state: Optional[str] = None) -> Flow:
    # The callback runs on a fresh Flow, so no PKCE verifier can be carried over.
    return Flow.from_client_config(
        _client_config(),
        scopes=settings.google_scopes,
        state=state,
        redirect_uri=settings.google_redirect_uri,
        autogenerate_code_verifier=False,
    )


def _token_dict(creds: Credentials) -> dict:
    expires_at = None
    if creds.expiry is not None:
        # google-auth keeps expiry as a naive UTC datetime
        expires_at = creds.expiry.replace(tzinfo=timezone.utc).timestamp()
    return {
        "access_token": creds.token,
        "refresh_token": creds.refresh_token,
        "expires_at": expires_at,
    }


def build_auth_url(state: str) -> str:
    """
    Build the Google consent URL to redirect the user to.

    Args:
        state: Opaque CSRF value, checked again in the callback.
    """
    flow = _build_flow(state=state)
    auth_url, _ = flow.authorization_url(access_type="offline", prompt="consent")
    logger.info("oauth.auth_url_built", extra={"action": "oauth.auth_url_built"})
    return auth_url


def exchange_code(code: str, state: str) -> Optional[dict]:
    """
    Exchange an authorization code for tokens.

    Returns:
        Dict with 'access_token', 'refresh_token', 'expires_at' (unix time),
        or None if the exchange fails.
    """
    flow = _build_flow(state=state)
    try:
        flow.fetch_token(code=code)
    except Exception as e:
        logger.error(
            "oauth.token_exchange_failed",
            extra={
                "action": "oauth.token_exchange_failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        return None

    tokens = _token_dict(flow.credentials)
    logger.info(
        "oauth.token_acquired",
        extra={
            "action": "oauth.token_acquired",
            "has_refresh_token": bool(tokens["refresh_token"]),
        },
    )
    return tokens


def refresh_access_token(refresh_token: str) -> Optional[dict]:
    """
    Use a refresh token to get a new access token.

    Returns:
        Same shape as exchange_code, or None if the refresh fails
        (e.g., access revoked).
    """
    creds = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=TOKEN_URI,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        scopes=settings.google_scopes,
    )
    try:
        creds.refresh(GoogleRequest())
    except GoogleAuthError as e:
        logger.warning(
            "oauth.token_refresh_failed",
            extra={"action": "oauth.token_refresh_failed", "error": str(e)},
        )
        return None

    tokens = _token_dict(creds)
    # Google usually does not rotate refresh tokens
    tokens["refresh_token"] = tokens["refresh_token"] or refresh_token
    logger.info("oauth.token_refreshed", extra={"action": "oauth.token_refreshed"})
    return tokens
