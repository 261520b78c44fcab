"""
Stock API Endpoints.

Endpoints for suppliers to add and remove stock, toggle availability, and for
anyone to read aggregate stock and pending restocks.
"""

from typing import Dict, List

from fastapi import APIRouter, Depends

from api.dependencies import get_runtime, http_error, rate_limit
from api.models import (
    AddStockBody,
    ItemStockResponse,
    RemoveStockBody,
    RemoveStockResponse,
    StockEntryResponse,
    SupplierAwayBody,
)
from domain.errors import PoolError
from services.runtime import PoolRuntime

router = APIRouter()


@router.post(
    "/stock",
    response_model=StockEntryResponse,
    status_code=201,
    summary="Add Stock",
    dependencies=[Depends(rate_limit("add"))],
)
async def add_stock(body: AddStockBody, runtime: PoolRuntime = Depends(get_runtime)):
    """
    Add units to a supplier's stock of an item.

    Creates the stock entry on first contribution. Adding stock drains the
    item's waitlist.
    """
    try:
        entry = await runtime.ledger.add(
            body.supplier_id,
            body.item_id,
            body.quantity,
            method=body.method,
            credential_ref=body.credential_ref,
        )
    except PoolError as e:
        raise http_error(e)
    return StockEntryResponse.from_domain(entry)


@router.post(
    "/stock/remove",
    response_model=RemoveStockResponse,
    summary="Remove Stock",
    dependencies=[Depends(rate_limit("remove"))],
)
async def remove_stock(body: RemoveStockBody, runtime: PoolRuntime = Depends(get_runtime)):
    """Remove up to `quantity` units; the response says how many were removed."""
    try:
        removed = await runtime.ledger.remove(body.supplier_id, body.item_id, body.quantity)
    except PoolError as e:
        raise http_error(e)
    return RemoveStockResponse(removed=removed)


@router.get(
    "/stock/items/{item_id}",
    response_model=ItemStockResponse,
    summary="Item Stock",
    dependencies=[Depends(rate_limit("stock"))],
)
async def item_stock(item_id: int, runtime: PoolRuntime = Depends(get_runtime)):
    try:
        entries = await runtime.ledger.entries_for_item(item_id)
        pending = await runtime.scheduler.pending_counts()
    except PoolError as e:
        raise http_error(e)
    return ItemStockResponse(
        item_id=item_id,
        aggregate=sum(entry.quantity for entry in entries),
        pending_restock=pending.get(item_id, 0),
        entries=[StockEntryResponse.from_domain(entry) for entry in entries],
    )


@router.get(
    "/stock/suppliers/{supplier_id}",
    response_model=List[StockEntryResponse],
    summary="Supplier Stock",
)
async def supplier_stock(supplier_id: str, runtime: PoolRuntime = Depends(get_runtime)):
    try:
        entries = await runtime.ledger.entries_for_supplier(supplier_id)
    except PoolError as e:
        raise http_error(e)
    return [StockEntryResponse.from_domain(entry) for entry in entries]


@router.put("/suppliers/{supplier_id}/away", summary="Set Supplier Away")
async def set_supplier_away(
    supplier_id: str, body: SupplierAwayBody, runtime: PoolRuntime = Depends(get_runtime)
):
    try:
        await runtime.ledger.set_away(supplier_id, body.away)
    except PoolError as e:
        raise http_error(e)
    return {"supplier_id": supplier_id, "away": body.away}


@router.get("/restocks/pending", response_model=Dict[int, int], summary="Pending Restocks")
async def pending_restocks(runtime: PoolRuntime = Depends(get_runtime)):
    """Units waiting for their cooldown to elapse, grouped by item."""
    try:
        return await runtime.scheduler.pending_counts()
    except PoolError as e:
        raise http_error(e)
