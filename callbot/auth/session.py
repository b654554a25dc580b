"""
Session management with an in-memory token store.

Google tokens stay in server memory; the browser only holds a small
Fernet-encrypted session id cookie.

Trade-off: sessions are lost on server restart (the user reconnects Google
with one click).

Session data flow:
1. Auth callback stores tokens in _sessions, keyed by a random session id
2. Session id is encrypted and stored in a small cookie
3. On each request, the cookie is decrypted and the tokens looked up
4. If the server restarted → _sessions is empty → login again
"""

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from callbot.config import settings

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "call_assistant_session"
OAUTH_STATE_COOKIE_NAME = "call_assistant_oauth_state"

# Refresh this many seconds before Google's stated expiry
EXPIRY_BUFFER_SECONDS = 300

# Keys are session ids, values are SessionData. Never persisted.
_sessions: dict[str, "SessionData"] = {}


@dataclass
class SessionData:
    """Data stored per session (in server memory, not in cookie)."""
    access_token: str
    refresh_token: str
    token_expires_at: float  # unix timestamp
    user_name: str = ""
    user_email: str = ""
    session_id: str = ""  # key in _sessions, set by create_session

    @property
    def is_token_expired(self) -> bool:
        return time.time() >= (self.token_expires_at - EXPIRY_BUFFER_SECONDS)


def _get_fernet() -> Fernet:
    key_bytes = hashlib.sha256(settings.session_secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key_bytes))


def _decrypt_session_id(cookie_value: str) -> Optional[str]:
    try:
        return _get_fernet().decrypt(cookie_value.encode()).decode()
    except (InvalidToken, ValueError) as e:
        logger.warning(
            "session.decode_failed",
            extra={"action": "session.decode_failed", "error_type": type(e).__name__},
        )
        return None


def create_session(data: SessionData) -> str:
    """
    Store session data in memory.

    Returns:
        Encrypted cookie value containing only the session id.
    """
    session_id = secrets.token_urlsafe(32)
    data.session_id = session_id
    _sessions[session_id] = data

    logger.info(
        "session.created",
        extra={"action": "session.created", "active_sessions": len(_sessions)},
    )
    return _get_fernet().encrypt(session_id.encode()).decode()


def get_session(cookie_value: str) -> Optional[SessionData]:
    """Look up session data for a cookie. None if invalid or unknown."""
    session_id = _decrypt_session_id(cookie_value)
    if session_id is None:
        return None
    return _sessions.get(session_id)


def update_session(cookie_value: str, data: SessionData) -> bool:
    """Replace a session's data (e.g., after token refresh)."""
    session_id = _decrypt_session_id(cookie_value)
    if session_id is None or session_id not in _sessions:
        return False
    data.session_id = session_id
    _sessions[session_id] = data
    return True


def delete_session(cookie_value: str) -> None:
    """Remove a session from memory (on logout)."""
    session_id = _decrypt_session_id(cookie_value)
    if session_id is not None:
        _sessions.pop(session_id, None)


def get_session_from_request(request) -> Optional[SessionData]:
    """Convenience: extract session from a FastAPI/Starlette request."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        return None
    return get_session(cookie)
