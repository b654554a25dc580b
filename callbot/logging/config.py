"""
Structured JSON logging configuration.

Usage:
    # At app startup (once):
    from callbot.logging.config import setup_logging
    setup_logging()

    # In any module:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("call.placed", extra={"call_id": "conv_..."})
"""

import logging
import json
import sys
from datetime import datetime, timezone
from contextvars import ContextVar


# Set once per request in middleware; included in every log line of that request.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")
current_user_var: ContextVar[str] = ContextVar("current_user", default="anonymous")


# Extra fields whose values must never reach the log stream
REDACTED_FIELDS = frozenset({
    "transcript", "prompt", "completion", "email_body",
    "phone_number", "to_number", "access_token", "refresh_token",
})
REDACTED = "[redacted]"


class JSONFormatter(logging.Formatter):
    """One JSON object per log record. Sensitive extra fields are masked."""

    INTERNAL_FIELDS = {
        "name", "msg", "args", "created", "relativeCreated", "exc_info",
        "exc_text", "stack_info", "lineno", "funcName", "pathname",
        "filename", "module", "thread", "threadName", "process",
        "processName", "msecs", "levelname", "levelno", "message",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "user": current_user_var.get(),
        }

        for key, val in record.__dict__.items():
            if key in self.INTERNAL_FIELDS or key in log:
                continue
            log[key] = REDACTED if key in REDACTED_FIELDS else val

        if record.exc_info and record.exc_info[0] is not None:
            log["exception_type"] = record.exc_info[0].__name__
            log["exception_message"] = str(record.exc_info[1])
            log["traceback"] = self.formatException(record.exc_info)

        return json.dumps(log, default=str)


def setup_logging(level: str = "info") -> None:
    """Route the root logger to stdout as JSON and quiet chatty libraries."""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("httpx", "httpcore", "google_auth_oauthlib", "urllib3", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
