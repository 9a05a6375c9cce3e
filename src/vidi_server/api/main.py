# Vidi Server: FastAPI Application
#
# REST API + WebSocket server for dashboard storage, live updates and
# renderer builds. Components live in ``services`` and are built at
# startup from ServerConfig unless a caller configured them already.

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .. import __version__
from ..config import ServerConfig
from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..errors import NotFoundError, ToolchainUnavailableError, VidiError
from .dashboard_routes import router as dashboard_router
from .portal_routes import router as portal_router, static_files
from .services import services
from .stream_routes import router as stream_router

logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Vidi Dashboard Server",
    description="Dashboard storage, live streaming and WASM renderer builds",
    version=__version__,
)

# Viewers are served from anywhere; there is no authentication layer.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(dashboard_router)
app.include_router(stream_router)
app.include_router(portal_router)
app.mount("/static", static_files, name="static")


# ── Error mapping ──────────────────────────────────────────────────

@app.exception_handler(VidiError)
async def vidi_error_handler(request: Request, exc: VidiError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.http_status, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


# ── Health ─────────────────────────────────────────────────────────

@app.get("/api/health")
async def health():
    sweeper = services.sweeper
    last_run = sweeper.last_run if sweeper else None
    return {
        "status": "ok",
        "version": __version__,
        "started_at": services.started_at.isoformat() if services.started_at else None,
        "dashboards": services.store.count(),
        "viewers": services.hub.connection_count(),
        "compiling": services.pipeline.compiling_ids(),
        "toolchain": services.pipeline.toolchain_status,
        "sweeper": {
            "running": sweeper.running if sweeper else False,
            "last_run": last_run.isoformat() if last_run else None,
            "run_count": sweeper.run_count if sweeper else 0,
            "total_deleted": sweeper.total_deleted if sweeper else 0,
        },
    }


# ── Compiled renderers ─────────────────────────────────────────────

_MEDIA_TYPES = {".js": "text/javascript", ".wasm": "application/wasm"}


@app.get("/wasm/{dashboard_id}/{filename}")
async def get_artifact(dashboard_id: str, filename: str):
    """Serve a file of a dashboard's compiled renderer (vidi.js, vidi_bg.wasm)."""
    artifact_dir = services.pipeline.artifact_dir(dashboard_id).resolve()
    path = (artifact_dir / filename).resolve()
    if path.parent != artifact_dir or not path.is_file():
        raise NotFoundError(dashboard_id, f"No artifact {filename} for dashboard {dashboard_id}")
    return FileResponse(path, media_type=_MEDIA_TYPES.get(path.suffix, "application/octet-stream"))


# ── Lifecycle ──────────────────────────────────────────────────────

@app.on_event("startup")
async def startup_event():
    """Build services, recover interrupted builds, check the toolchain, start the sweeper."""
    if not services.configured:
        services.configure(ServerConfig.from_env())
    services.started_at = datetime.now(timezone.utc)
    config = services.config

    services.store.fail_interrupted_builds()

    try:
        await services.pipeline.verify_toolchain()
    except ToolchainUnavailableError as exc:
        logger.warning("%s; dashboards will be stored but builds will fail", exc)

    Path(config.wasm_dir).mkdir(parents=True, exist_ok=True)
    await services.sweeper.start()

    get_audit_logger().log_event(
        EventType.SYSTEM_START,
        "Vidi server starting",
        severity=EventSeverity.INFO,
        details={"dashboards": services.store.count()},
    )
    logger.info("Vidi server ready (%d dashboards)", services.store.count())


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background work."""
    if services.sweeper is not None:
        await services.sweeper.stop()
    if services.pipeline is not None:
        await services.pipeline.shutdown()
    get_audit_logger().log_event(EventType.SYSTEM_STOP, "Vidi server shutting down")


def start_api_server(config: Optional[ServerConfig] = None):
    """
    Start the server with uvicorn.

    Args:
        config: Server configuration (default: from VIDI_* environment)
    """
    config = config or ServerConfig.from_env()
    services.configure(config)

    ssl_args = {}
    if config.tls_enabled:
        ssl_args = {"ssl_certfile": str(config.tls_cert), "ssl_keyfile": str(config.tls_key)}
        logger.info("TLS enabled")

    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level, **ssl_args)


if __name__ == "__main__":
    start_api_server()
