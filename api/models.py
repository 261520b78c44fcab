"""
API Request and Response Models.

Pydantic models for validating API requests and serializing responses.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from domain.panel import PanelRecord, PanelView
from domain.request import Request
from domain.stock import FulfillmentMethod, StockEntry
from domain.waitlist import WaitlistEntry


# ============================================================================
# Request (ticket) Models
# ============================================================================

class CreateRequestBody(BaseModel):
    """Open a request for one item."""
    item_id: int = Field(..., gt=0, description="Catalog item id")
    requester_id: str = Field(..., min_length=1)
    auto_join_waitlist: bool = Field(
        True,
        description="Join the item's waitlist when it is out of stock"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "item_id": 1245620,
                "requester_id": "user-123",
                "auto_join_waitlist": True
            }
        }


class ClaimRequestBody(BaseModel):
    supplier_id: str = Field(..., min_length=1)


class CompleteRequestBody(BaseModel):
    proof: Optional[str] = Field(None, description="Opaque proof of delivery (e.g. activation token)")


class FailRequestBody(BaseModel):
    reason: str = Field("failed", description="failed, invalid_proof or invalid_token")


class CancelRequestBody(BaseModel):
    reason: str = "cancelled"


class NoAutoCloseBody(BaseModel):
    flag: bool


class RequestResponse(BaseModel):
    """Single request in API response."""
    request_id: str
    item_id: int
    requester_id: str
    supplier_id: Optional[str] = None
    state: str
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    no_auto_close: bool
    evidence_verified: bool
    reason: Optional[str] = None

    @staticmethod
    def from_domain(request: Request) -> "RequestResponse":
        return RequestResponse(
            request_id=request.request_id,
            item_id=request.item_id,
            requester_id=request.requester_id,
            supplier_id=request.supplier_id,
            state=request.state.value,
            created_at=request.created_at,
            updated_at=request.updated_at,
            completed_at=request.completed_at,
            no_auto_close=request.no_auto_close,
            evidence_verified=request.evidence_verified,
            reason=request.reason,
        )


class CooldownResponse(BaseModel):
    requester_id: str
    cooldowns: Dict[int, datetime] = Field(default_factory=dict, description="item_id -> available_at")


# ============================================================================
# Stock Models
# ============================================================================

class AddStockBody(BaseModel):
    supplier_id: str = Field(..., min_length=1)
    item_id: int = Field(..., gt=0)
    quantity: int = Field(..., description="Units to add (1-9999)")
    method: FulfillmentMethod = FulfillmentMethod.MANUAL
    credential_ref: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "supplier_id": "supplier-7",
                "item_id": 1245620,
                "quantity": 5,
                "method": "manual"
            }
        }


class RemoveStockBody(BaseModel):
    supplier_id: str = Field(..., min_length=1)
    item_id: int = Field(..., gt=0)
    quantity: int


class RemoveStockResponse(BaseModel):
    removed: int


class StockEntryResponse(BaseModel):
    supplier_id: str
    item_id: int
    quantity: int
    method: str
    updated_at: datetime

    @staticmethod
    def from_domain(entry: StockEntry) -> "StockEntryResponse":
        return StockEntryResponse(
            supplier_id=entry.supplier_id,
            item_id=entry.item_id,
            quantity=entry.quantity,
            method=entry.method.value,
            updated_at=entry.updated_at,
        )


class ItemStockResponse(BaseModel):
    """Aggregate stock of one item across suppliers."""
    item_id: int
    aggregate: int
    pending_restock: int
    entries: List[StockEntryResponse]


class SupplierAwayBody(BaseModel):
    away: bool


# ============================================================================
# Waitlist Models
# ============================================================================

class JoinWaitlistBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_id: int = Field(..., gt=0)


class JoinWaitlistResponse(BaseModel):
    joined: bool
    message: str


class WaitlistEntryResponse(BaseModel):
    item_id: int
    user_id: str
    joined_at: datetime

    @staticmethod
    def from_domain(entry: WaitlistEntry) -> "WaitlistEntryResponse":
        return WaitlistEntryResponse(item_id=entry.item_id, user_id=entry.user_id, joined_at=entry.joined_at)


class RemovedResponse(BaseModel):
    removed: int


# ============================================================================
# Panel Models
# ============================================================================

class PublishPanelBody(BaseModel):
    guild_id: str
    channel_id: str
    message_id: str


class PausePanelBody(BaseModel):
    minutes: Optional[int] = Field(None, ge=1, le=7 * 24 * 60, description="Auto-reopen after this many minutes")


class PanelRecordResponse(BaseModel):
    guild_id: str
    channel_id: str
    message_id: str
    paused: bool
    reopen_at: Optional[datetime] = None
    updated_at: datetime

    @staticmethod
    def from_domain(record: PanelRecord) -> "PanelRecordResponse":
        return PanelRecordResponse(
            guild_id=record.guild_id,
            channel_id=record.channel_id,
            message_id=record.message_id,
            paused=record.paused,
            reopen_at=record.reopen_at,
            updated_at=record.updated_at,
        )


class ItemAvailabilityResponse(BaseModel):
    item_id: int
    name: str
    high_demand: bool
    stock: int
    pending_restock: int
    in_stock: bool


class PanelViewResponse(BaseModel):
    generated_at: datetime
    items: List[ItemAvailabilityResponse]
    total_stock: int
    available_suppliers: int
    paused: bool
    reopen_at: Optional[datetime] = None

    @staticmethod
    def from_domain(view: PanelView) -> "PanelViewResponse":
        return PanelViewResponse(
            generated_at=view.generated_at,
            items=[
                ItemAvailabilityResponse(
                    item_id=item.item_id,
                    name=item.name,
                    high_demand=item.high_demand,
                    stock=item.stock,
                    pending_restock=item.pending_restock,
                    in_stock=item.in_stock,
                )
                for item in view.items
            ],
            total_stock=view.total_stock,
            available_suppliers=view.available_suppliers,
            paused=view.paused,
            reopen_at=view.reopen_at,
        )


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
    retry_after: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "detail": "Slow down! Try request again in 42 seconds."
            }
        }
