"""
In-memory call session store.

One CallSession per placed call, keyed by the vendor call id. Sessions are
updated by webhook events or vendor polling and removed when:
1. their summary has been delivered to the poller (at-most-once), or
2. they are older than the time-to-live (summary never polled).

Not persisted: sessions are lost on restart, like the
login sessions in callbot.auth.session.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from callbot.auth.session import SessionData
from callbot.config import settings

logger = logging.getLogger(__name__)

# Call statuses
STATUS_INITIATED = "initiated"
STATUS_ENDED = "ended"
STATUS_FAILED = "failed"


@dataclass
class CallSession:
    """State of one outbound call."""
    call_id: str
    owner: Optional[SessionData] = None
    owner_id: str = ""
    task_type: str = "lookup"
    status: str = STATUS_INITIATED
    status_pushed: bool = False
    transcript: str = ""
    summary: Optional[dict[str, Any]] = None
    summarizing: bool = False
    created_at: float = field(default_factory=time.monotonic)
    updated_at: float = field(default_factory=time.monotonic)


class CallStore:
    """Keyed store of CallSessions with time-to-live eviction."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, CallSession] = {}

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._sessions)

    def evict_expired(self) -> int:
        """Drop sessions older than the TTL. Returns how many were dropped."""
        cutoff = self._clock() - self._ttl
        expired = [cid for cid, s in self._sessions.items() if s.created_at < cutoff]
        for call_id in expired:
            del self._sessions[call_id]
        if expired:
            logger.info(
                "call_store.evicted",
                extra={"action": "call_store.evicted", "count": len(expired)},
            )
        return len(expired)

    def create(self, call_id: str, owner: Optional[SessionData] = None, task_type: str = "lookup") -> CallSession:
        self.evict_expired()
        now = self._clock()
        session = CallSession(
            call_id=call_id,
            owner=owner,
            owner_id=owner.session_id if owner else "",
            task_type=task_type,
            created_at=now,
            updated_at=now,
        )
        self._sessions[call_id] = session
        return session

    def get(self, call_id: str) -> Optional[CallSession]:
        self.evict_expired()
        return self._sessions.get(call_id)

    def get_owned(self, call_id: str, owner_id: str) -> Optional[CallSession]:
        """
        The call, but only for the login session that placed it.

        Calls placed by another session look unknown.
        """
        session = self.get(call_id)
        if session is None:
            return None
        if not owner_id or session.owner_id != owner_id:
            logger.warning(
                "call_store.owner_mismatch",
                extra={"action": "call_store.owner_mismatch", "call_id": call_id},
            )
            return None
        return session

    def update_status(self, call_id: str, status: str, pushed: bool = True) -> Optional[CallSession]:
        """Record the latest vendor status. Unknown calls are ignored."""
        session = self.get(call_id)
        if session is None:
            return None
        session.status = status
        session.status_pushed = session.status_pushed or pushed
        session.updated_at = self._clock()
        return session

    def set_summary(self, call_id: str, summary: dict[str, Any]) -> Optional[CallSession]:
        session = self.get(call_id)
        if session is None:
            return None
        session.summary = summary
        session.summarizing = False
        session.updated_at = self._clock()
        return session

    def pop_summary(self, call_id: str) -> Optional[dict[str, Any]]:
        """
        Deliver a ready summary and forget the call.

        Returns None (and keeps the session) while no summary exists.
        A second read after delivery also returns None.
        """
        session = self.get(call_id)
        if session is None or session.summary is None:
            return None
        del self._sessions[call_id]
        return session.summary


_store: Optional[CallStore] = None


def get_call_store() -> CallStore:
    """Get or create the process-wide call store."""
    global _store
    if _store is None:
        _store = CallStore(ttl_seconds=settings.call_session_ttl_seconds)
    return _store
