"""
Page routes — serves the single-page call assistant UI.

The page itself is static apart from the connected/not-connected state;
everything else goes through the JSON endpoints from static/script.js.
"""

from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from callbot.auth.session import get_session_from_request
from callbot.config import settings

router = APIRouter(tags=["pages"])
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))


@router.get("/", response_class=HTMLResponse)
async def index(request: Request):
    """Render the main page."""
    return templates.TemplateResponse(request, "index.html", {
        "app_name": settings.app_name,
        "authenticated": get_session_from_request(request) is not None,
    })
