from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from backend.app.api.deps import get_availability, get_clock, get_ledger
from backend.app.core.clock import Clock
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.models.stock import MovementDirection, MovementKind, StockKey
from backend.app.schemas import (
    AvailabilityBulkBody,
    AvailabilityBulkResponse,
    AvailabilityCheckResponse,
    AvailabilityResponse,
    LedgerEntryResponse,
    LedgerPageResponse,
    LedgerSummaryResponse,
    MovementCreate,
    MovementPageResponse,
    ReconciliationResponse,
)
from backend.app.services.availability import AvailabilityCalculator
from backend.app.services.ledger import StockLedger

router = APIRouter()
logger = get_logger(__name__)

SUMMARY_DEFAULT_DAYS = 30


def _handle_service_error(e: ServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.to_detail())


def _stock_key(
    product_id: int = Query(..., gt=0),
    variant_id: Optional[int] = Query(None, gt=0),
    branch_id: Optional[int] = Query(None, gt=0),
) -> StockKey:
    return StockKey(product_id, variant_id, branch_id)


# --- Availability ---
@router.get("/available", response_model=AvailabilityResponse)
async def get_available(
    key: StockKey = Depends(_stock_key),
    availability: AvailabilityCalculator = Depends(get_availability),
):
    """Units on hand minus units held by active, unexpired reservations."""
    try:
        available = await availability.available(key)
    except ServiceError as e:
        _handle_service_error(e)
    return AvailabilityResponse(**key.as_dict(), available=available)


@router.post("/available/bulk", response_model=AvailabilityBulkResponse)
async def get_available_bulk(
    data: AvailabilityBulkBody,
    availability: AvailabilityCalculator = Depends(get_availability),
):
    """Unknown stock items are left out of the response."""
    try:
        result = await availability.available_bulk(item.to_key() for item in data.items)
    except ServiceError as e:
        _handle_service_error(e)
    return AvailabilityBulkResponse(
        items=[AvailabilityResponse(**key.as_dict(), available=available) for key, available in result.items()]
    )


@router.get("/check", response_model=AvailabilityCheckResponse)
async def check_available(
    quantity: int = Query(..., ge=1),
    key: StockKey = Depends(_stock_key),
    availability: AvailabilityCalculator = Depends(get_availability),
):
    try:
        check = await availability.check_detail(key, quantity)
    except ServiceError as e:
        _handle_service_error(e)
    return AvailabilityCheckResponse(
        **key.as_dict(),
        requested=check.requested,
        available=check.available,
        sufficient=check.sufficient,
        shortfall=check.shortfall,
    )


# --- Ledger ---
@router.post("/movements", response_model=LedgerEntryResponse, status_code=201)
async def create_movement(
    data: MovementCreate,
    ledger: StockLedger = Depends(get_ledger),
):
    """
    Record a manual movement (purchase, return, adjustment, shrinkage...).

    Inbound kinds take a positive quantity, outbound kinds a negative one.
    """
    try:
        return await ledger.record(
            data.to_key(),
            data.movement_kind,
            data.quantity,
            unit_cost=data.unit_cost,
            reference=data.reference,
            reason=data.reason,
        )
    except ServiceError as e:
        _handle_service_error(e)


@router.get("/movements", response_model=LedgerPageResponse)
async def get_movements(
    key: StockKey = Depends(_stock_key),
    movement_kind: Optional[MovementKind] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    newest_first: bool = False,
    ledger: StockLedger = Depends(get_ledger),
):
    """Kardex of one stock item."""
    try:
        page = await ledger.history_page(
            key,
            movement_kind=movement_kind,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
            newest_first=newest_first,
        )
    except ServiceError as e:
        _handle_service_error(e)
    return LedgerPageResponse(
        entries=[LedgerEntryResponse.model_validate(entry) for entry in page.entries],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/movements/all", response_model=MovementPageResponse)
async def list_all_movements(
    movement_kind: Optional[MovementKind] = None,
    direction: Optional[MovementDirection] = None,
    product_id: Optional[int] = Query(None, gt=0),
    variant_id: Optional[int] = Query(None, gt=0),
    branch_id: Optional[int] = Query(None, gt=0),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ledger: StockLedger = Depends(get_ledger),
):
    """Organization-wide movement list, newest first, with totals for the whole filter."""
    page = await ledger.list_movements(
        movement_kind=movement_kind,
        direction=direction,
        product_id=product_id,
        variant_id=variant_id,
        branch_id=branch_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return MovementPageResponse(
        entries=[LedgerEntryResponse.model_validate(entry) for entry in page.entries],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        inbound_units=page.inbound_units,
        outbound_units=page.outbound_units,
        total_value=page.total_value,
    )


@router.get("/movements/summary", response_model=LedgerSummaryResponse)
async def get_movement_summary(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    ledger: StockLedger = Depends(get_ledger),
    clock: Clock = Depends(get_clock),
):
    """Per-kind movement statistics; defaults to the last 30 days."""
    date_to = date_to or clock()
    date_from = date_from or date_to - timedelta(days=SUMMARY_DEFAULT_DAYS)
    summary = await ledger.summary(date_from, date_to)
    return LedgerSummaryResponse.model_validate(summary)


@router.get("/movements/verify", response_model=ReconciliationResponse)
async def verify_movements(
    key: StockKey = Depends(_stock_key),
    ledger: StockLedger = Depends(get_ledger),
):
    try:
        report = await ledger.verify(key)
    except ServiceError as e:
        _handle_service_error(e)
    if not report.reconciled:
        logger.warning(
            "Ledger reconciliation failed",
            stock_item_id=report.stock_item_id,
            broken_entry_ids=report.broken_entry_ids,
        )
    return ReconciliationResponse.model_validate(report)
