"""Sync trigger and status endpoints."""

import logging

from fastapi import APIRouter, Request

from regmirror.schemas.api import SyncResponse
from regmirror.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=SyncResponse)
async def trigger_sync(request: Request):
    """Run a registry sync now (no-op if one is already running)."""
    sync_service = request.app.state.sync_service
    try:
        stats = await sync_service.sync_now()
    except Exception as e:
        safe_error_response(logger, e, "Registry sync failed")

    if stats is None:
        return SyncResponse(success=True, skipped=True)
    return SyncResponse(success=True, stats=stats.to_dict())


@router.get("/status")
async def get_sync_status(request: Request):
    """Scheduler and last-run information."""
    return request.app.state.sync_service.get_status()
