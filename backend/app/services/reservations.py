# backend/app/services/reservations.py
"""
Reservation manager: time-boxed holds on stock.

State machine: active -> confirmed | canceled | expired, all terminal.
Each mutating operation is one transaction (run_atomic) that takes row locks
in a fixed order (stock items by ascending key, then reservation rows),
re-checks state and availability under those locks, writes and commits.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import Clock, utcnow
from backend.app.core.database import run_atomic
from backend.app.core.exceptions import (
    BatchPartialFailure,
    BatchTooLargeError,
    InsufficientStockError,
    InvalidQuantityError,
    InvalidTTLError,
    ReservationNotActiveError,
    ReservationNotFoundError,
)
from backend.app.core.logging import get_logger
from backend.app.core.metrics import (
    reservations_created_total,
    reservations_rejected_total,
    reservations_transitions_total,
)
from backend.app.core.settings import Settings, get_settings
from backend.app.models.reservation import OriginKind, Reservation, ReservationState
from backend.app.models.stock import LedgerEntry, MovementKind, StockKey
from backend.app.services.availability import AvailabilityCalculator, effectively_active
from backend.app.services.ledger import StockLedger

logger = get_logger(__name__)

ACTIVE = ReservationState.ACTIVE.value
CONFIRMED = ReservationState.CONFIRMED.value
CANCELED = ReservationState.CANCELED.value
EXPIRED = ReservationState.EXPIRED.value

# Ledger movement written when a hold of the given origin is confirmed
CONFIRM_MOVEMENT_KIND = {
    OriginKind.POS_SALE: MovementKind.OUTBOUND_SALE,
    OriginKind.SALES_ORDER: MovementKind.OUTBOUND_SALE,
    OriginKind.SERVICE_APPOINTMENT: MovementKind.OUTBOUND_SERVICE_USE,
    OriginKind.TRANSFER: MovementKind.OUTBOUND_TRANSFER,
}


@dataclass
class ReservationRequest:
    """One line of a batch reservation."""
    product_id: int
    quantity: int
    variant_id: Optional[int] = None
    branch_id: Optional[int] = None

    @property
    def key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id, self.branch_id)


@dataclass
class CancelByOriginResult:
    canceled: List[Reservation] = field(default_factory=list)
    # Matches that could not be canceled: {"reservation_id": ..., "state": ...}
    failures: List[dict] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.canceled)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise BatchPartialFailure(self.failures)


class ReservationManager:
    """Reservation operations for one organization, on behalf of one actor."""

    def __init__(
        self,
        session: AsyncSession,
        organization_id: int,
        actor_id: int,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.session = session
        self.organization_id = organization_id
        self.actor_id = actor_id
        self.clock = clock
        self.default_ttl = settings.RESERVATION_DEFAULT_TTL_MINUTES
        self.max_ttl = settings.RESERVATION_MAX_TTL_MINUTES
        self.max_extend = settings.RESERVATION_MAX_EXTEND_MINUTES
        self.batch_limit = settings.RESERVATION_BATCH_MAX_ITEMS
        self.max_attempts = settings.TX_MAX_ATTEMPTS
        self.ledger = StockLedger(session, organization_id, actor_id, clock, self.max_attempts)
        self.availability = AvailabilityCalculator(
            session, organization_id, clock, bulk_limit=settings.AVAILABILITY_BULK_MAX_ITEMS
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _atomic(self, operation: str, work):
        return await run_atomic(self.session, work, operation=operation, max_attempts=self.max_attempts)

    @staticmethod
    def _validate_quantity(quantity: int) -> None:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidQuantityError()

    def _validate_extension(self, extra_minutes: int) -> None:
        if isinstance(extra_minutes, bool) or not isinstance(extra_minutes, int):
            raise InvalidTTLError(extra_minutes, self.max_extend)
        if not 0 < extra_minutes <= self.max_extend:
            raise InvalidTTLError(extra_minutes, self.max_extend)

    def _resolve_ttl(self, ttl_minutes: Optional[int]) -> int:
        if ttl_minutes is None:
            return self.default_ttl
        if ttl_minutes <= 0:
            raise InvalidTTLError(ttl_minutes, self.max_ttl)
        return min(ttl_minutes, self.max_ttl)

    def _check_batch_size(self, size: int) -> None:
        if size == 0:
            raise InvalidQuantityError("Batch must contain at least one item")
        if size > self.batch_limit:
            raise BatchTooLargeError(size, self.batch_limit)

    async def _load(self, reservation_ids: Sequence[int], lock: bool = False) -> dict[int, Reservation]:
        query = select(Reservation).where(
            Reservation.organization_id == self.organization_id,
            Reservation.id.in_(reservation_ids),
        )
        if lock:
            query = query.order_by(Reservation.id).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        found = {r.id: r for r in result.scalars().all()}
        for reservation_id in reservation_ids:
            if reservation_id not in found:
                raise ReservationNotFoundError(reservation_id)
        return found

    @staticmethod
    def _reference(reservation: Reservation) -> str:
        if reservation.origin_id is not None:
            return f"{reservation.origin_kind}:{reservation.origin_id}"
        return f"reservation:{reservation.id}"

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _reserve_lines(
        self,
        lines: List[tuple[StockKey, int]],
        origin_kind: OriginKind,
        origin_id: Optional[int],
        ttl_minutes: int,
    ) -> List[Reservation]:
        now = self.clock()
        items = await self.ledger.lock_stock_items(key for key, _ in lines)

        requested: dict[StockKey, int] = defaultdict(int)
        for key, quantity in lines:
            requested[key] += quantity

        shortages = []
        for key in sorted(requested, key=StockKey.sort_key):
            available = await self.availability.available_for_item(items[key], now)
            if available < requested[key]:
                shortages.append({**key.as_dict(), "requested": requested[key], "available": max(available, 0)})
        if shortages:
            reservations_rejected_total.labels(reason="insufficient_stock").inc()
            logger.warning(
                "Reservation refused: insufficient stock",
                origin_kind=origin_kind.value,
                origin_id=origin_id,
                shortages=shortages,
            )
            raise InsufficientStockError(shortages)

        expires_at = now + timedelta(minutes=ttl_minutes)
        reservations = [
            Reservation(
                organization_id=self.organization_id,
                stock_item_id=items[key].id,
                product_id=key.product_id,
                variant_id=key.variant_id,
                branch_id=key.branch_id,
                quantity=quantity,
                origin_kind=origin_kind.value,
                origin_id=origin_id,
                state=ACTIVE,
                expires_at=expires_at,
                created_at=now,
                created_by=self.actor_id,
            )
            for key, quantity in lines
        ]
        self.session.add_all(reservations)
        await self.session.flush()
        return reservations

    async def reserve(
        self,
        key: StockKey,
        quantity: int,
        origin_kind: OriginKind | str,
        origin_id: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
    ) -> Reservation:
        """
        Hold `quantity` units of a stock item for ttl_minutes (default 15,
        clamped to the configured maximum).

        Raises:
            InvalidQuantityError, InvalidTTLError: bad input
            StockItemNotFoundError: no such stock item in this organization
            InsufficientStockError: availability under lock is below quantity
        """
        origin = OriginKind(origin_kind)
        self._validate_quantity(quantity)
        ttl = self._resolve_ttl(ttl_minutes)

        reservations = await self._atomic(
            "reservation.reserve",
            lambda: self._reserve_lines([(key, quantity)], origin, origin_id, ttl),
        )
        reservation = reservations[0]
        reservations_created_total.labels(origin_kind=origin.value).inc()
        logger.info(
            "Reservation created",
            reservation_id=reservation.id,
            product_id=key.product_id,
            branch_id=key.branch_id,
            quantity=quantity,
            origin_kind=origin.value,
            origin_id=origin_id,
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    async def reserve_batch(
        self,
        items: Iterable[ReservationRequest],
        origin_kind: OriginKind | str,
        origin_id: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
    ) -> List[Reservation]:
        """
        All-or-nothing reservation of several lines.

        Lines for the same stock item are admitted against their combined
        quantity. If any line falls short, InsufficientStockError lists every
        short stock item and no reservation is written.
        """
        origin = OriginKind(origin_kind)
        items = list(items)
        self._check_batch_size(len(items))
        for item in items:
            self._validate_quantity(item.quantity)
        ttl = self._resolve_ttl(ttl_minutes)

        lines = [(item.key, item.quantity) for item in items]
        reservations = await self._atomic(
            "reservation.reserve_batch",
            lambda: self._reserve_lines(lines, origin, origin_id, ttl),
        )
        reservations_created_total.labels(origin_kind=origin.value).inc(len(reservations))
        logger.info(
            "Reservation batch created",
            reservation_ids=[r.id for r in reservations],
            origin_kind=origin.value,
            origin_id=origin_id,
        )
        return reservations

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _confirm_ids(self, reservation_ids: List[int]) -> List[LedgerEntry]:
        now = self.clock()
        # Keys never change, so an unlocked read is enough to order the locks
        unlocked = await self._load(reservation_ids)
        await self.ledger.lock_stock_items(r.key for r in unlocked.values())
        locked = await self._load(reservation_ids, lock=True)

        entries = []
        for reservation_id in reservation_ids:
            reservation = locked[reservation_id]
            state = reservation.effective_state(now)
            if state != ACTIVE:
                raise ReservationNotActiveError(reservation_id, state)
            entry = await self.ledger.append(
                reservation.key,
                CONFIRM_MOVEMENT_KIND[OriginKind(reservation.origin_kind)],
                -reservation.quantity,
                reference=self._reference(reservation),
                reservation_id=reservation.id,
            )
            reservation.state = CONFIRMED
            reservation.confirmed_at = now
            entries.append(entry)
        await self.session.flush()
        return entries

    async def confirm(self, reservation_id: int) -> LedgerEntry:
        """
        Turn an active hold into a permanent outbound ledger entry.

        The state change and the ledger write commit together; if the ledger
        refuses (stock dropped below the held quantity) the hold stays active.
        """
        entries = await self._atomic("reservation.confirm", lambda: self._confirm_ids([reservation_id]))
        reservations_transitions_total.labels(state=CONFIRMED).inc()
        logger.info("Reservation confirmed", reservation_id=reservation_id, ledger_entry_id=entries[0].id)
        return entries[0]

    async def confirm_batch(self, reservation_ids: Iterable[int]) -> List[LedgerEntry]:
        """All-or-nothing confirm; duplicate ids are confirmed once."""
        ids = list(dict.fromkeys(reservation_ids))
        self._check_batch_size(len(ids))
        entries = await self._atomic("reservation.confirm_batch", lambda: self._confirm_ids(ids))
        reservations_transitions_total.labels(state=CONFIRMED).inc(len(entries))
        logger.info("Reservation batch confirmed", reservation_ids=ids)
        return entries

    async def cancel(self, reservation_id: int) -> Reservation:
        """
        Release an active hold. Canceling an already canceled hold is a no-op;
        a confirmed or expired hold raises ReservationNotActiveError.
        """
        async def work():
            now = self.clock()
            reservation = (await self._load([reservation_id], lock=True))[reservation_id]
            state = reservation.effective_state(now)
            if state == CANCELED:
                return reservation, False
            if state != ACTIVE:
                raise ReservationNotActiveError(reservation_id, state)
            reservation.state = CANCELED
            reservation.canceled_at = now
            await self.session.flush()
            return reservation, True

        reservation, changed = await self._atomic("reservation.cancel", work)
        if changed:
            reservations_transitions_total.labels(state=CANCELED).inc()
            logger.info("Reservation canceled", reservation_id=reservation_id)
        return reservation

    async def cancel_by_origin(self, origin_kind: OriginKind | str, origin_id: int) -> CancelByOriginResult:
        """
        Best-effort cancel of every hold created for an upstream order,
        appointment or sale. Holds already confirmed or expired are reported
        in result.failures instead of aborting the rest; lapsed holds found
        still stored as active are marked expired on the way.
        """
        origin = OriginKind(origin_kind)

        async def work():
            now = self.clock()
            result = await self.session.execute(
                select(Reservation)
                .where(
                    Reservation.organization_id == self.organization_id,
                    Reservation.origin_kind == origin.value,
                    Reservation.origin_id == origin_id,
                )
                .order_by(Reservation.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            outcome = CancelByOriginResult()
            for reservation in result.scalars().all():
                state = reservation.effective_state(now)
                if state == ACTIVE:
                    reservation.state = CANCELED
                    reservation.canceled_at = now
                    outcome.canceled.append(reservation)
                elif state != CANCELED:
                    if reservation.state == ACTIVE:
                        reservation.state = EXPIRED
                        reservation.expired_at = now
                    outcome.failures.append({"reservation_id": reservation.id, "state": state})
            await self.session.flush()
            return outcome

        outcome = await self._atomic("reservation.cancel_by_origin", work)
        if outcome.canceled:
            reservations_transitions_total.labels(state=CANCELED).inc(outcome.count)
        logger.info(
            "Reservations canceled by origin",
            origin_kind=origin.value,
            origin_id=origin_id,
            canceled=outcome.count,
            not_canceled=len(outcome.failures),
        )
        return outcome

    async def extend(self, reservation_id: int, extra_minutes: int) -> Reservation:
        """
        Push expires_at of an active hold by extra_minutes (1..60). An expired
        hold is never revived.
        """
        self._validate_extension(extra_minutes)

        async def work():
            now = self.clock()
            reservation = (await self._load([reservation_id], lock=True))[reservation_id]
            state = reservation.effective_state(now)
            if state != ACTIVE:
                raise ReservationNotActiveError(reservation_id, state)
            reservation.expires_at = max(reservation.expires_at, now) + timedelta(minutes=extra_minutes)
            await self.session.flush()
            return reservation

        reservation = await self._atomic("reservation.extend", work)
        logger.info(
            "Reservation extended",
            reservation_id=reservation_id,
            extra_minutes=extra_minutes,
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, reservation_id: int) -> Reservation:
        return (await self._load([reservation_id]))[reservation_id]

    async def list_reservations(
        self,
        state: Optional[ReservationState | str] = None,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        branch_id: Optional[int] = None,
        origin_kind: Optional[OriginKind | str] = None,
        origin_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Reservation]:
        """Newest first. `state` filters on the effective state."""
        query = select(Reservation).where(Reservation.organization_id == self.organization_id)
        if state is not None:
            now = self.clock()
            state = ReservationState(state).value
            if state == ACTIVE:
                query = query.where(effectively_active(now))
            elif state == EXPIRED:
                query = query.where(or_(
                    Reservation.state == EXPIRED,
                    and_(Reservation.state == ACTIVE, Reservation.expires_at <= now),
                ))
            else:
                query = query.where(Reservation.state == state)
        if product_id is not None:
            query = query.where(Reservation.product_id == product_id)
        if variant_id is not None:
            query = query.where(Reservation.variant_id == variant_id)
        if branch_id is not None:
            query = query.where(Reservation.branch_id == branch_id)
        if origin_kind is not None:
            query = query.where(Reservation.origin_kind == OriginKind(origin_kind).value)
        if origin_id is not None:
            query = query.where(Reservation.origin_id == origin_id)
        query = query.order_by(Reservation.created_at.desc(), Reservation.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(query)
        return list(result.scalars().all())
