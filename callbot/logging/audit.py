"""
Audit logging for user-visible actions (lookups, calls, summaries).

SECURITY: Never log email content, subjects, transcripts, phone numbers,
LLM prompts, or LLM responses. Only ids, counts and timings. Fields named
in callbot.logging.config.REDACTED_FIELDS are masked by the formatter.

Usage:
    from callbot.logging.audit import audit
    audit.info("lookup.completed", candidates=12, relevant=3, latency_ms=2400)

Fields passed as None are left out, so optional vendor values (a call
duration the vendor has not reported yet) do not show up as nulls.
"""

import logging
from typing import Any


class AuditLogger:
    """Structured action events on the "audit" logger."""

    def __init__(self, name: str = "audit"):
        self._logger = logging.getLogger(name)

    def _emit(self, level: int, action: str, fields: dict[str, Any]) -> None:
        extra = {key: value for key, value in fields.items() if value is not None}
        extra["action"] = action
        self._logger.log(level, action, extra=extra)

    def info(self, action: str, **fields: Any) -> None:
        self._emit(logging.INFO, action, fields)

    def warning(self, action: str, **fields: Any) -> None:
        self._emit(logging.WARNING, action, fields)

    def error(self, action: str, **fields: Any) -> None:
        self._emit(logging.ERROR, action, fields)


audit = AuditLogger()
