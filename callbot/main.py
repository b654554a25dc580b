"""
FastAPI application entry point.

Run with:
    uvicorn callbot.main:app --reload --port 8000
"""

import uuid
import logging
import time
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from callbot.config import settings
from callbot.logging.config import setup_logging, request_id_var, current_user_var
from callbot.auth.routes import router as auth_router
from callbot.api.routes_lookup import router as lookup_router
from callbot.api.routes_calls import router as calls_router, webhook_router
from callbot.api.routes_pages import router as pages_router
from callbot.auth.session import get_session_from_request
from callbot.calls.store import get_call_store
from callbot.llm.client import get_completion_client

# --- Initialize logging FIRST ---
setup_logging(level=settings.log_level)
logger = logging.getLogger(__name__)

# Paths reachable without a login session
PUBLIC_PREFIXES = ("/auth/", "/health", "/ready", "/static/", "/docs", "/openapi", "/webhooks/")

# --- Create the FastAPI app ---
app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.app_env == "development" else None,
    redoc_url=None,
)
app.mount(
    "/static",
    StaticFiles(directory=str(Path(__file__).resolve().parent / "static")),
    name="static",
)


# --- Middleware: Request context + logging ---
@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Set up request ID, user context, and request timing."""
    req_id = str(uuid.uuid4())[:8]
    request_id_var.set(req_id)

    user = "anonymous"
    session = get_session_from_request(request)
    if session:
        user = session.user_email or session.user_name or "authenticated"
    current_user_var.set(user)

    start = time.monotonic()
    response = await call_next(request)

    response.headers["X-Request-ID"] = req_id

    latency_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "http.request",
        extra={
            "action": "http.request",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "latency_ms": latency_ms,
        },
    )

    return response


# --- Middleware: Redirect unauthenticated page requests to login ---
@app.middleware("http")
async def auth_redirect_middleware(request: Request, call_next):
    """Redirect unauthenticated browser requests to login. API gets 401."""
    path = request.url.path

    if path.startswith(PUBLIC_PREFIXES):
        return await call_next(request)

    session = get_session_from_request(request)
    if session is None:
        if path.startswith("/api/"):
            return JSONResponse(
                status_code=401,
                content={"detail": "Not authenticated"},
            )
        return RedirectResponse(url="/auth/login")

    return await call_next(request)


# --- Register route modules ---
app.include_router(auth_router)
app.include_router(pages_router)
app.include_router(lookup_router)
app.include_router(calls_router)
app.include_router(webhook_router)


# --- Health check endpoints ---
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    checks = {
        "config_loaded": True,
        "llm_api_key_set": bool(settings.llm_api_key),
        "google_client_id_set": bool(settings.google_client_id),
        "elevenlabs_agent_id_set": bool(settings.elevenlabs_agent_id),
    }
    all_ok = all(checks.values())
    return {
        "status": "ready" if all_ok else "not_ready",
        "checks": checks,
        "active_calls": len(get_call_store()),
        "llm": get_completion_client().get_session_stats(),
    }
