"""
Requests API Endpoints.

Endpoints for the request (ticket) lifecycle: open, claim, verify, complete,
fail, cancel, and the requester's cooldown profile.
"""

from fastapi import APIRouter, Depends

from api.dependencies import get_runtime, http_error, rate_limit
from api.models import (
    CancelRequestBody,
    ClaimRequestBody,
    CompleteRequestBody,
    CooldownResponse,
    CreateRequestBody,
    FailRequestBody,
    NoAutoCloseBody,
    RequestResponse,
)
from domain.errors import PoolError
from services.runtime import PoolRuntime

router = APIRouter()


@router.post(
    "/requests",
    response_model=RequestResponse,
    status_code=201,
    summary="Open Request",
    dependencies=[Depends(rate_limit("request"))],
)
async def create_request(body: CreateRequestBody, runtime: PoolRuntime = Depends(get_runtime)):
    """
    Open a request for an item.

    **Failure cases (409):**
    - Item is out of stock (the requester is added to the waitlist when
      `auto_join_waitlist` is true; the message says so)
    - Requester is still within the item's cooldown since their last completion
    """
    try:
        request = await runtime.lifecycle.create(
            body.item_id, body.requester_id, auto_join_waitlist=body.auto_join_waitlist
        )
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.get("/requests/{request_id}", response_model=RequestResponse, summary="Get Request")
async def get_request(request_id: str, runtime: PoolRuntime = Depends(get_runtime)):
    try:
        request = await runtime.lifecycle.get(request_id)
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.post("/requests/{request_id}/claim", response_model=RequestResponse, summary="Claim Request")
async def claim_request(
    request_id: str, body: ClaimRequestBody, runtime: PoolRuntime = Depends(get_runtime)
):
    """
    Claim a pending request as a supplier.

    Only one supplier can claim a request; the loser of a race gets 409.
    The supplier must hold stock for the item.
    """
    try:
        request = await runtime.lifecycle.claim(request_id, body.supplier_id)
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.post("/requests/{request_id}/verify", response_model=RequestResponse, summary="Mark Evidence Verified")
async def verify_request(request_id: str, runtime: PoolRuntime = Depends(get_runtime)):
    try:
        request = await runtime.lifecycle.mark_evidence_verified(request_id)
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.post("/requests/{request_id}/complete", response_model=RequestResponse, summary="Complete Request")
async def complete_request(
    request_id: str, body: CompleteRequestBody, runtime: PoolRuntime = Depends(get_runtime)
):
    """
    Complete a claimed, verified request.

    Debits one unit from the supplier's stock and schedules its restock after
    the item's cooldown. Completing twice returns 409 and changes nothing.
    """
    try:
        request = await runtime.lifecycle.complete(request_id, body.proof)
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.post("/requests/{request_id}/fail", response_model=RequestResponse, summary="Fail Request")
async def fail_request(
    request_id: str, body: FailRequestBody, runtime: PoolRuntime = Depends(get_runtime)
):
    try:
        request = await runtime.lifecycle.fail(request_id, body.reason)
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.post("/requests/{request_id}/cancel", response_model=RequestResponse, summary="Cancel Request")
async def cancel_request(
    request_id: str, body: CancelRequestBody, runtime: PoolRuntime = Depends(get_runtime)
):
    try:
        request = await runtime.lifecycle.cancel(request_id, body.reason)
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.put(
    "/requests/{request_id}/no-auto-close",
    response_model=RequestResponse,
    summary="Toggle Auto-Close Protection",
)
async def set_no_auto_close(
    request_id: str, body: NoAutoCloseBody, runtime: PoolRuntime = Depends(get_runtime)
):
    try:
        request = await runtime.lifecycle.set_no_auto_close(request_id, body.flag)
    except PoolError as e:
        raise http_error(e)
    return RequestResponse.from_domain(request)


@router.get(
    "/requesters/{requester_id}/cooldowns",
    response_model=CooldownResponse,
    summary="List Active Cooldowns",
)
async def list_cooldowns(requester_id: str, runtime: PoolRuntime = Depends(get_runtime)):
    try:
        cooldowns = await runtime.lifecycle.cooldowns_for(requester_id)
    except PoolError as e:
        raise http_error(e)
    return CooldownResponse(requester_id=requester_id, cooldowns=cooldowns)
