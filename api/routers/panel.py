"""
Panel API Endpoints.

The public stock panel: read the aggregate view, publish/clear the panel
record, and pause it for maintenance.
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends

from api.dependencies import get_runtime, http_error, rate_limit
from api.models import PanelRecordResponse, PanelViewResponse, PausePanelBody, PublishPanelBody
from domain.errors import PoolError
from services.runtime import PoolRuntime

router = APIRouter()


@router.get(
    "/panel",
    response_model=PanelViewResponse,
    summary="Panel View",
    dependencies=[Depends(rate_limit("panel_request"))],
)
async def panel_view(runtime: PoolRuntime = Depends(get_runtime)):
    """Stock, pending restocks and in-stock flag for every catalog item."""
    try:
        view = await runtime.panel.view()
    except PoolError as e:
        raise http_error(e)
    return PanelViewResponse.from_domain(view)


@router.put("/panel", response_model=PanelRecordResponse, summary="Publish Panel")
async def publish_panel(body: PublishPanelBody, runtime: PoolRuntime = Depends(get_runtime)):
    try:
        record = await runtime.panel.publish(body.guild_id, body.channel_id, body.message_id)
    except PoolError as e:
        raise http_error(e)
    return PanelRecordResponse.from_domain(record)


@router.delete("/panel", summary="Clear Panel")
async def clear_panel(runtime: PoolRuntime = Depends(get_runtime)):
    try:
        removed = await runtime.panel.clear()
    except PoolError as e:
        raise http_error(e)
    return {"cleared": removed}


@router.post("/panel/pause", response_model=PanelRecordResponse, summary="Pause Panel")
async def pause_panel(body: PausePanelBody, runtime: PoolRuntime = Depends(get_runtime)):
    """Pause the panel; with `minutes`, it reopens automatically afterwards."""
    duration: Optional[timedelta] = timedelta(minutes=body.minutes) if body.minutes else None
    try:
        record = await runtime.panel.pause(duration)
    except PoolError as e:
        raise http_error(e)
    return PanelRecordResponse.from_domain(record)


@router.post("/panel/reopen", response_model=Optional[PanelRecordResponse], summary="Reopen Panel")
async def reopen_panel(runtime: PoolRuntime = Depends(get_runtime)):
    try:
        record = await runtime.panel.reopen()
    except PoolError as e:
        raise http_error(e)
    return PanelRecordResponse.from_domain(record) if record is not None else None


@router.post("/catalog/reload", summary="Reload Catalog")
async def reload_catalog(runtime: PoolRuntime = Depends(get_runtime)):
    """Re-read the item catalog from its source."""
    reload = getattr(runtime.catalog, "reload", None)
    if reload is None:
        return {"items": len(runtime.catalog.all_items())}
    return {"items": reload()}
