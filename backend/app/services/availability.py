"""
Availability calculator.

available = stock_on_hand - Σ quantity of reservations that are *effectively*
active: stored state 'active' AND expires_at > now. A hold past its expiry
never counts, whether or not the sweeper has flipped its stored state yet.
Every read and every admission check goes through effectively_active().
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import Clock, utcnow
from backend.app.core.exceptions import BatchTooLargeError, InvalidQuantityError, StockItemNotFoundError
from backend.app.models.reservation import Reservation, ReservationState
from backend.app.models.stock import StockItem, StockKey
from backend.app.services.ledger import stock_scope


def effectively_active(now: datetime):
    """SQL predicate for reservations that currently hold stock."""
    return and_(
        Reservation.state == ReservationState.ACTIVE.value,
        Reservation.expires_at > now,
    )


@dataclass
class AvailabilityCheck:
    key: StockKey
    requested: int
    available: int

    @property
    def sufficient(self) -> bool:
        return self.available >= self.requested

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)


class AvailabilityCalculator:
    """Read-only; never locks or writes."""

    def __init__(
        self,
        session: AsyncSession,
        organization_id: int,
        clock: Clock = utcnow,
        bulk_limit: int = 100,
    ):
        self.session = session
        self.organization_id = organization_id
        self.clock = clock
        self.bulk_limit = bulk_limit

    async def held_quantity(self, stock_item_id: int, now: Optional[datetime] = None) -> int:
        """Units of one stock item held by effectively active reservations."""
        now = now or self.clock()
        held = await self.session.scalar(
            select(func.coalesce(func.sum(Reservation.quantity), 0)).where(
                Reservation.stock_item_id == stock_item_id,
                effectively_active(now),
            )
        )
        return int(held or 0)

    async def available_for_item(self, item: StockItem, now: Optional[datetime] = None) -> int:
        return item.stock_on_hand - await self.held_quantity(item.id, now)

    async def _get_item(self, key: StockKey) -> StockItem:
        result = await self.session.execute(
            select(StockItem).where(and_(*stock_scope(self.organization_id, key)))
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise StockItemNotFoundError(key.product_id, key.variant_id, key.branch_id)
        return item

    async def available(self, key: StockKey) -> int:
        item = await self._get_item(key)
        return await self.available_for_item(item)

    async def available_bulk(self, keys: Iterable[StockKey]) -> Dict[StockKey, int]:
        """
        Availability of many stock items in two queries.

        Keys without a stock item in this organization are left out of the
        result rather than failing the whole call.
        """
        unique: List[StockKey] = list(dict.fromkeys(keys))
        if len(unique) > self.bulk_limit:
            raise BatchTooLargeError(len(unique), self.bulk_limit)
        if not unique:
            return {}

        items_result = await self.session.execute(
            select(StockItem).where(
                or_(*(and_(*stock_scope(self.organization_id, key)) for key in unique))
            )
        )
        items = {item.key: item for item in items_result.scalars().all()}
        if not items:
            return {}

        now = self.clock()
        held_result = await self.session.execute(
            select(Reservation.stock_item_id, func.sum(Reservation.quantity))
            .where(
                Reservation.stock_item_id.in_([item.id for item in items.values()]),
                effectively_active(now),
            )
            .group_by(Reservation.stock_item_id)
        )
        held = {stock_item_id: int(total) for stock_item_id, total in held_result.all()}

        return {
            key: items[key].stock_on_hand - held.get(items[key].id, 0)
            for key in unique
            if key in items
        }

    async def check(self, key: StockKey, quantity: int) -> bool:
        return (await self.check_detail(key, quantity)).sufficient

    async def check_detail(self, key: StockKey, quantity: int) -> AvailabilityCheck:
        if quantity < 1:
            raise InvalidQuantityError()
        return AvailabilityCheck(key=key, requested=quantity, available=await self.available(key))
