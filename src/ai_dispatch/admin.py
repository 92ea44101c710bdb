"""
admin.py — Operational endpoints for a running dispatcher.

  POST /admin/cache/clear             — drop every cached response
  POST /admin/metrics/reset           — zero all counters
  GET  /admin/streams                 — ids of active streams
  POST /admin/streams/abort           — abort every active stream
  POST /admin/streams/{id}/abort      — abort one stream
  POST /admin/models/refresh          — refresh model lists of all backends
  PUT  /admin/model                   — select the global ``backend:model``
  POST /admin/audit/clear             — delete audit log files

When DISPATCH_ADMIN_TOKEN is set every admin call must send it in the
``X-Admin-Token`` header.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from .dispatcher import Dispatcher
from .models import SelectModelRequest
from .persistence import FolderAuditSink

logger = logging.getLogger(__name__)


def get_dispatcher(request: Request) -> Dispatcher:
    """Return the Dispatcher built by the app lifespan (503 before startup)."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialised")
    return dispatcher


def _require_admin_token(
    dispatcher: Dispatcher = Depends(get_dispatcher),
    x_admin_token: str | None = Header(None),
) -> None:
    expected = dispatcher.settings.admin_token
    if not expected:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")


router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(_require_admin_token)])


@router.post("/cache/clear")
async def clear_cache(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    dispatcher.clear_cache()
    return {"status": "ok", "message": "Response cache cleared"}


@router.post("/metrics/reset")
async def reset_metrics(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    dispatcher.reset_metrics()
    return {"status": "ok"}


@router.get("/streams")
async def list_streams(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    return {"active": dispatcher.streams.active_ids(), "count": dispatcher.active_stream_count()}


@router.post("/streams/abort")
async def abort_all_streams(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    return {"aborted": dispatcher.abort_all()}


@router.post("/streams/{stream_id}/abort")
async def abort_stream(stream_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    if not dispatcher.abort_stream(stream_id):
        raise HTTPException(status_code=404, detail=f"No active stream '{stream_id}'")
    return {"aborted": stream_id}


@router.post("/models/refresh")
async def refresh_all_models(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    models = await dispatcher.refresh_all_models()
    return {
        "status": "ok",
        "models": {backend.value: names for backend, names in models.items()},
        "total": sum(len(names) for names in models.values()),
    }


@router.put("/model")
async def select_model(
    body: SelectModelRequest, dispatcher: Dispatcher = Depends(get_dispatcher)
) -> dict[str, Any]:
    try:
        dispatcher.set_selected_model(body.model)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok", "current_model": dispatcher.get_current_model()}


@router.post("/audit/clear")
async def clear_audit_log(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    sink = dispatcher.audit.sink
    if not isinstance(sink, FolderAuditSink):
        return {"status": "ok", "removed": 0}
    removed = sink.clear()
    logger.info("Audit log cleared via admin endpoint (%d files)", removed)
    return {"status": "ok", "removed": removed}
