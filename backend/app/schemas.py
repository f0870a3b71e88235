from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.app.core.sanitize import sanitize_user_input
from backend.app.models.reservation import OriginKind
from backend.app.models.stock import MovementKind, StockKey

# Caller-facing limits; the services enforce the configured values as well
MAX_TTL_MINUTES = 120
MAX_EXTEND_MINUTES = 60
MAX_BATCH_ITEMS = 50
MAX_BULK_ITEMS = 100


# --- Stock keys ---
class StockKeyFields(BaseModel):
    product_id: int = Field(gt=0)
    variant_id: Optional[int] = Field(default=None, gt=0)
    branch_id: Optional[int] = Field(default=None, gt=0)

    def to_key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id, self.branch_id)


# --- Reservations ---
class ReservationCreate(StockKeyFields):
    quantity: int = Field(ge=1)
    origin_kind: OriginKind
    origin_id: Optional[int] = None
    ttl_minutes: Optional[int] = Field(default=None, gt=0, le=MAX_TTL_MINUTES)


class ReservationBatchItem(StockKeyFields):
    quantity: int = Field(ge=1)


class ReservationBatchCreate(BaseModel):
    items: List[ReservationBatchItem] = Field(min_length=1, max_length=MAX_BATCH_ITEMS)
    origin_kind: OriginKind
    origin_id: Optional[int] = None
    # Applied to items that do not name a branch themselves
    branch_id: Optional[int] = Field(default=None, gt=0)
    ttl_minutes: Optional[int] = Field(default=None, gt=0, le=MAX_TTL_MINUTES)


class ConfirmBatchBody(BaseModel):
    reservation_ids: List[int] = Field(min_length=1, max_length=MAX_BATCH_ITEMS)


class CancelByOriginBody(BaseModel):
    origin_kind: OriginKind
    origin_id: int


class ExtendBody(BaseModel):
    extra_minutes: int = Field(gt=0, le=MAX_EXTEND_MINUTES)


class ReservationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    variant_id: Optional[int] = None
    branch_id: Optional[int] = None
    quantity: int
    origin_kind: str
    origin_id: Optional[int] = None
    state: str
    effective_state: str
    expires_at: datetime
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None


class CancelByOriginResponse(BaseModel):
    canceled: int
    canceled_ids: List[int]
    failures: List[dict]


# --- Ledger ---
class MovementCreate(StockKeyFields):
    movement_kind: MovementKind
    quantity: int
    unit_cost: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    reference: Optional[str] = Field(default=None, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("quantity")
    @classmethod
    def non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("quantity must not be zero")
        return v

    @field_validator("reference", "reason")
    @classmethod
    def sanitize_text_fields(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return sanitize_user_input(v) or None


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    variant_id: Optional[int] = None
    branch_id: Optional[int] = None
    movement_kind: str
    quantity: int
    resulting_stock: int
    unit_cost: Optional[Decimal] = None
    total_value: Optional[Decimal] = None
    reference: Optional[str] = None
    reason: Optional[str] = None
    reservation_id: Optional[int] = None
    actor_id: int
    created_at: datetime


class LedgerPageResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    total: int
    limit: int
    offset: int


class MovementPageResponse(LedgerPageResponse):
    inbound_units: int
    outbound_units: int
    total_value: Decimal


class MovementSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    movement_kind: str
    movements: int
    units: int
    total_value: Decimal


class LedgerSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    by_kind: List[MovementSummaryResponse]
    inbound_units: int
    outbound_units: int
    total_value: Decimal


class ReconciliationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stock_item_id: int
    entries_checked: int
    broken_entry_ids: List[int]
    stock_on_hand: int
    ledger_stock: Optional[int] = None
    reconciled: bool


# --- Availability ---
class AvailabilityResponse(StockKeyFields):
    available: int


class AvailabilityBulkBody(BaseModel):
    items: List[StockKeyFields] = Field(min_length=1, max_length=MAX_BULK_ITEMS)


class AvailabilityBulkResponse(BaseModel):
    items: List[AvailabilityResponse]


class AvailabilityCheckResponse(StockKeyFields):
    requested: int
    available: int
    sufficient: bool
    shortfall: int
