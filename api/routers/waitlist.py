"""
Waitlist API Endpoints.
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_runtime, http_error, rate_limit
from api.models import JoinWaitlistBody, JoinWaitlistResponse, RemovedResponse, WaitlistEntryResponse
from domain.errors import NotFound, PoolError
from services.runtime import PoolRuntime

router = APIRouter()


@router.post(
    "/waitlist",
    response_model=JoinWaitlistResponse,
    summary="Join Waitlist",
    dependencies=[Depends(rate_limit("waitlist"))],
)
async def join_waitlist(body: JoinWaitlistBody, runtime: PoolRuntime = Depends(get_runtime)):
    """Join an item's waitlist. Joining twice is a no-op."""
    item = runtime.catalog.item_by_id(body.item_id)
    if item is None:
        raise http_error(NotFound("Item", body.item_id))
    try:
        joined = await runtime.waitlist.join(body.user_id, body.item_id)
    except PoolError as e:
        raise http_error(e)
    message = (
        f"You're on the waitlist for {item.name}."
        if joined
        else f"You're already on the waitlist for {item.name}."
    )
    return JoinWaitlistResponse(joined=joined, message=message)


@router.delete("/waitlist/{item_id}", response_model=RemovedResponse, summary="Leave Waitlist")
async def leave_waitlist(
    item_id: int,
    user_id: str = Query(..., min_length=1),
    runtime: PoolRuntime = Depends(get_runtime),
):
    try:
        removed = await runtime.waitlist.leave(user_id, item_id)
    except PoolError as e:
        raise http_error(e)
    return RemovedResponse(removed=removed)


@router.delete("/waitlist", response_model=RemovedResponse, summary="Leave All Waitlists")
async def leave_all_waitlists(
    user_id: str = Query(..., min_length=1),
    runtime: PoolRuntime = Depends(get_runtime),
):
    try:
        removed = await runtime.waitlist.leave_all(user_id)
    except PoolError as e:
        raise http_error(e)
    return RemovedResponse(removed=removed)


@router.get("/waitlist/{item_id}", response_model=List[WaitlistEntryResponse], summary="Item Waitlist")
async def item_waitlist(item_id: int, runtime: PoolRuntime = Depends(get_runtime)):
    """Waiters for an item in join order."""
    try:
        entries = await runtime.waitlist.waiters(item_id)
    except PoolError as e:
        raise http_error(e)
    return [WaitlistEntryResponse.from_domain(entry) for entry in entries]


@router.get("/users/{user_id}/waitlist", response_model=List[int], summary="User Waitlists")
async def user_waitlists(user_id: str, runtime: PoolRuntime = Depends(get_runtime)):
    try:
        return await runtime.waitlist.items_for(user_id)
    except PoolError as e:
        raise http_error(e)
