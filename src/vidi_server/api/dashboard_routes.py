# Vidi Server: Dashboard REST Routes
#
#   POST   /api/v1/dashboards                     create (+ build)
#   GET    /api/v1/dashboards                     list summaries
#   GET    /api/v1/dashboards/{id}                get (+ touch)
#   PUT    /api/v1/dashboards/{id}                replace (+ refresh, + build)
#   PATCH  /api/v1/dashboards/{id}                update metadata
#   DELETE /api/v1/dashboards/{id}                delete record, channel, artifact
#   POST   /api/v1/dashboards/{id}/touch          extend TTL window
#   POST   /api/v1/dashboards/{id}/update         push a live update
#   GET    /api/v1/dashboards/{id}/build-status   build status + artifact check
#   POST   /api/v1/dashboards/{id}/recompile      trigger a build

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Response, status
from pydantic import AliasChoices, BaseModel, Field

from ..core.audit_log import EventType, get_audit_logger
from ..errors import NotFoundError
from ..models.dashboard import (
    CLEARABLE_FIELDS,
    DashboardMeta,
    DashboardRecord,
    ListQuery,
    MetaUpdate,
    utcnow,
)
from ..models.messages import RefreshAll, parse_update_command
from .services import services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/dashboards", tags=["dashboards"])


# ── Request models ─────────────────────────────────────────────────

class DashboardRequest(BaseModel):
    """Body of create and replace. ``dashboard`` is accepted for ``document``."""

    xp_name: Optional[str] = None
    user: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    permanent: bool = False
    ttl: Optional[int] = None
    document: Any = Field(..., validation_alias=AliasChoices("document", "dashboard"))


class UpdateMetaRequest(BaseModel):
    """Omitted fields are kept; an explicit null clears xp_name, user or tags."""

    xp_name: Optional[str] = None
    user: Optional[str] = None
    tags: Optional[List[str]] = None
    permanent: Optional[bool] = None
    ttl: Optional[int] = None


# ── Endpoints ──────────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_dashboard(req: DashboardRequest):
    """Store a new dashboard and start building its renderer."""
    ttl = None if req.permanent else (req.ttl if req.ttl is not None else services.config.default_ttl)
    meta = DashboardMeta(
        xp_name=req.xp_name,
        user=req.user,
        tags=req.tags,
        permanent=req.permanent,
        ttl=ttl,
    )
    record = services.store.create(DashboardRecord(meta=meta, document=req.document))

    get_audit_logger().log_event(
        EventType.DASHBOARD_CREATED,
        "Dashboard created",
        dashboard_id=record.id,
        details={"xp_name": meta.xp_name, "user": meta.user, "permanent": meta.permanent},
    )
    services.pipeline.submit(record.id)
    return record.to_dict()


@router.get("")
async def list_dashboards(
    xp_name: Optional[str] = None,
    user: Optional[str] = None,
    tag: Optional[str] = None,
    permanent: Optional[bool] = None,
    sort: str = "updated_at",
    order: str = "desc",
    limit: int = 50,
    offset: int = 0,
):
    query = ListQuery(
        xp_name=xp_name,
        user=user,
        tag=tag,
        permanent=permanent,
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )
    return [s.to_dict() for s in services.store.list(query)]


@router.get("/{dashboard_id}")
async def get_dashboard(dashboard_id: str):
    """Full record. Reading a dashboard counts as an access."""
    services.store.touch(dashboard_id)
    record = services.store.get(dashboard_id)
    if record is None:
        raise NotFoundError(dashboard_id)
    return record.to_dict()


@router.put("/{dashboard_id}")
async def replace_dashboard(dashboard_id: str, req: DashboardRequest):
    """Overwrite content and metadata, refresh viewers and rebuild.

    Omitted ``xp_name``, ``user`` and ``ttl`` keep their stored values.
    """
    existing = services.store.get(dashboard_id)
    if existing is None:
        raise NotFoundError(dashboard_id)
    old = existing.meta

    if req.permanent:
        ttl = None
    else:
        ttl = req.ttl if req.ttl is not None else (old.ttl or services.config.default_ttl)

    now = utcnow()
    meta = DashboardMeta(
        id=dashboard_id,
        xp_name=req.xp_name if req.xp_name is not None else old.xp_name,
        user=req.user if req.user is not None else old.user,
        tags=req.tags,
        permanent=req.permanent,
        ttl=ttl,
        created_at=old.created_at,
        updated_at=now,
        last_accessed_at=now,
    )
    updated = services.store.replace(dashboard_id, DashboardRecord(meta=meta, document=req.document))

    services.hub.broadcast(dashboard_id, RefreshAll(dashboard=updated.document))
    get_audit_logger().log_event(EventType.DASHBOARD_REPLACED, "Dashboard replaced", dashboard_id=dashboard_id)
    services.pipeline.submit(dashboard_id)
    return updated.to_dict()


@router.patch("/{dashboard_id}")
async def update_dashboard_meta(dashboard_id: str, req: UpdateMetaRequest):
    sent = req.model_dump(exclude_unset=True)
    update = MetaUpdate(
        **{k: v for k, v in sent.items() if v is not None},
        clear=tuple(k for k in CLEARABLE_FIELDS if k in sent and sent[k] is None),
    )
    updated = services.store.update_meta(dashboard_id, update)
    get_audit_logger().log_event(
        EventType.DASHBOARD_META_UPDATED,
        "Dashboard metadata updated",
        dashboard_id=dashboard_id,
        details=sent,
    )
    return updated.to_dict()


@router.delete("/{dashboard_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_dashboard(dashboard_id: str):
    if not services.store.delete(dashboard_id):
        raise NotFoundError(dashboard_id)

    services.hub.remove_dashboard(dashboard_id)
    services.pipeline.delete_artifact(dashboard_id)
    get_audit_logger().log_event(EventType.DASHBOARD_DELETED, "Dashboard deleted", dashboard_id=dashboard_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{dashboard_id}/touch", status_code=status.HTTP_204_NO_CONTENT)
async def touch_dashboard(dashboard_id: str):
    services.store.touch(dashboard_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{dashboard_id}/update", status_code=status.HTTP_202_ACCEPTED)
async def push_update(dashboard_id: str, payload: Dict[str, Any] = Body(...)):
    """Broadcast one update command to the dashboard's live viewers."""
    command = parse_update_command(payload)
    if not services.store.exists(dashboard_id):
        raise NotFoundError(dashboard_id)

    seq = services.hub.broadcast(dashboard_id, command)
    return {
        "seq": seq,
        "viewers": services.hub.connection_count(dashboard_id),
    }


@router.get("/{dashboard_id}/build-status")
@router.get("/{dashboard_id}/wasm-status", include_in_schema=False)
async def get_build_status(dashboard_id: str):
    """Stored status and on-disk artifact presence, reported side by side."""
    record = services.store.get(dashboard_id)
    if record is None:
        raise NotFoundError(dashboard_id)
    return {
        "status": record.meta.build_status.value,
        "error": record.meta.build_error,
        "artifact_ready": services.pipeline.wasm_exists(dashboard_id),
        "compiling": services.pipeline.is_compiling(dashboard_id),
    }


@router.post("/{dashboard_id}/recompile", status_code=status.HTTP_202_ACCEPTED)
async def trigger_recompile(dashboard_id: str):
    if not services.store.exists(dashboard_id):
        raise NotFoundError(dashboard_id)

    started = services.pipeline.submit(dashboard_id)
    if not started:
        logger.info("Recompile of %s ignored: build already in progress", dashboard_id)
    return {"started": started}
