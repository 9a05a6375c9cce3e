# Vidi Server: Browser Pages
#
#   GET /              portal (<static_dir>/portal.html)
#   GET /d/{id}        dashboard viewer (<static_dir>/dashboard.html)
#   GET /static/...    viewer scripts and styles from <static_dir>
#
# The pages are plain files; the viewer script reads the id from the URL,
# loads /wasm/{id}/vidi.js and connects to the live stream itself.

import logging
from pathlib import Path
from uuid import UUID

from fastapi import APIRouter
from fastapi.responses import FileResponse, HTMLResponse
from starlette.responses import PlainTextResponse

from .. import __version__
from .services import services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["portal"], include_in_schema=False)

_NO_CACHE = {"Cache-Control": "no-store, no-cache, must-revalidate", "Pragma": "no-cache", "Expires": "0"}


def _page(name: str) -> Path:
    return Path(services.config.static_dir) / name


@router.get("/")
async def serve_portal():
    """Serve the portal page."""
    path = _page("portal.html")
    if path.exists():
        return FileResponse(path, headers=_NO_CACHE)
    # Fallback to API info if the static pages are not installed
    return {
        "name": "Vidi Dashboard Server",
        "version": __version__,
        "status": "operational",
    }


@router.get("/d/{dashboard_id}")
async def serve_dashboard_view(dashboard_id: str):
    """Serve the viewer page for a dashboard id."""
    try:
        UUID(dashboard_id)
    except ValueError:
        return HTMLResponse("<h1>Dashboard not found</h1>", status_code=404)

    path = _page("dashboard.html")
    if path.exists():
        return FileResponse(path, headers=_NO_CACHE)
    return {
        "dashboard_id": dashboard_id,
        "renderer": f"/wasm/{dashboard_id}/vidi.js",
        "stream": f"/ws/v1/dashboards/{dashboard_id}",
    }


async def static_files(scope, receive, send):
    """ASGI app mounted at /static; serves the configured static_dir."""
    static = services.static_files
    if static is None or not Path(services.config.static_dir).is_dir():
        response = PlainTextResponse("Not Found", status_code=404)
        await response(scope, receive, send)
        return
    await static(scope, receive, send)
