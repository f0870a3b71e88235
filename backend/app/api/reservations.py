from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from backend.app.api.deps import get_clock, get_reservation_manager
from backend.app.core.clock import Clock
from backend.app.core.exceptions import ServiceError
from backend.app.core.limiter import limiter
from backend.app.core.settings import get_settings
from backend.app.models.reservation import OriginKind, Reservation, ReservationState
from backend.app.schemas import (
    CancelByOriginBody,
    CancelByOriginResponse,
    ConfirmBatchBody,
    ExtendBody,
    LedgerEntryResponse,
    ReservationBatchCreate,
    ReservationCreate,
    ReservationResponse,
)
from backend.app.services.reservations import ReservationManager, ReservationRequest

router = APIRouter()


def _reserve_rate_limit() -> str:
    return get_settings().RATE_LIMIT_RESERVE


def _handle_service_error(e: ServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.to_detail())


def _to_response(reservation: Reservation, clock: Clock) -> ReservationResponse:
    return ReservationResponse(
        id=reservation.id,
        product_id=reservation.product_id,
        variant_id=reservation.variant_id,
        branch_id=reservation.branch_id,
        quantity=reservation.quantity,
        origin_kind=reservation.origin_kind,
        origin_id=reservation.origin_id,
        state=reservation.state,
        effective_state=reservation.effective_state(clock()),
        expires_at=reservation.expires_at,
        created_at=reservation.created_at,
        confirmed_at=reservation.confirmed_at,
        canceled_at=reservation.canceled_at,
        expired_at=reservation.expired_at,
    )


@router.post("", response_model=ReservationResponse, status_code=201)
@limiter.limit(_reserve_rate_limit)
async def create_reservation(
    request: Request,
    data: ReservationCreate,
    manager: ReservationManager = Depends(get_reservation_manager),
    clock: Clock = Depends(get_clock),
):
    """Hold stock for a POS sale, sales order, appointment or transfer."""
    try:
        reservation = await manager.reserve(
            data.to_key(),
            data.quantity,
            data.origin_kind,
            origin_id=data.origin_id,
            ttl_minutes=data.ttl_minutes,
        )
    except ServiceError as e:
        _handle_service_error(e)
    return _to_response(reservation, clock)


@router.post("/batch", response_model=List[ReservationResponse], status_code=201)
@limiter.limit(_reserve_rate_limit)
async def create_reservation_batch(
    request: Request,
    data: ReservationBatchCreate,
    manager: ReservationManager = Depends(get_reservation_manager),
    clock: Clock = Depends(get_clock),
):
    """All lines are held or none is; a shortfall lists every short item."""
    lines = [
        ReservationRequest(
            product_id=item.product_id,
            quantity=item.quantity,
            variant_id=item.variant_id,
            branch_id=item.branch_id if item.branch_id is not None else data.branch_id,
        )
        for item in data.items
    ]
    try:
        reservations = await manager.reserve_batch(
            lines, data.origin_kind, origin_id=data.origin_id, ttl_minutes=data.ttl_minutes
        )
    except ServiceError as e:
        _handle_service_error(e)
    return [_to_response(r, clock) for r in reservations]


@router.get("", response_model=List[ReservationResponse])
async def list_reservations(
    state: Optional[ReservationState] = None,
    product_id: Optional[int] = None,
    variant_id: Optional[int] = None,
    branch_id: Optional[int] = None,
    origin_kind: Optional[OriginKind] = None,
    origin_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    manager: ReservationManager = Depends(get_reservation_manager),
    clock: Clock = Depends(get_clock),
):
    reservations = await manager.list_reservations(
        state=state,
        product_id=product_id,
        variant_id=variant_id,
        branch_id=branch_id,
        origin_kind=origin_kind,
        origin_id=origin_id,
        limit=limit,
        offset=offset,
    )
    return [_to_response(r, clock) for r in reservations]


@router.post("/confirm-batch", response_model=List[LedgerEntryResponse])
async def confirm_reservation_batch(
    data: ConfirmBatchBody,
    manager: ReservationManager = Depends(get_reservation_manager),
):
    try:
        return await manager.confirm_batch(data.reservation_ids)
    except ServiceError as e:
        _handle_service_error(e)


@router.post("/cancel-by-origin", response_model=CancelByOriginResponse)
async def cancel_reservations_by_origin(
    data: CancelByOriginBody,
    manager: ReservationManager = Depends(get_reservation_manager),
):
    """Best-effort: holds that are already confirmed or expired are listed in `failures`."""
    try:
        outcome = await manager.cancel_by_origin(data.origin_kind, data.origin_id)
    except ServiceError as e:
        _handle_service_error(e)
    return CancelByOriginResponse(
        canceled=outcome.count,
        canceled_ids=[r.id for r in outcome.canceled],
        failures=outcome.failures,
    )


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: int,
    manager: ReservationManager = Depends(get_reservation_manager),
    clock: Clock = Depends(get_clock),
):
    try:
        reservation = await manager.get(reservation_id)
    except ServiceError as e:
        _handle_service_error(e)
    return _to_response(reservation, clock)


@router.post("/{reservation_id}/confirm", response_model=LedgerEntryResponse)
async def confirm_reservation(
    reservation_id: int,
    manager: ReservationManager = Depends(get_reservation_manager),
):
    """Consume the hold: writes the outbound ledger entry and returns it."""
    try:
        return await manager.confirm(reservation_id)
    except ServiceError as e:
        _handle_service_error(e)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: int,
    manager: ReservationManager = Depends(get_reservation_manager),
    clock: Clock = Depends(get_clock),
):
    try:
        reservation = await manager.cancel(reservation_id)
    except ServiceError as e:
        _handle_service_error(e)
    return _to_response(reservation, clock)


@router.post("/{reservation_id}/extend", response_model=ReservationResponse)
async def extend_reservation(
    reservation_id: int,
    data: ExtendBody,
    manager: ReservationManager = Depends(get_reservation_manager),
    clock: Clock = Depends(get_clock),
):
    try:
        reservation = await manager.extend(reservation_id, data.extra_minutes)
    except ServiceError as e:
        _handle_service_error(e)
    return _to_response(reservation, clock)
