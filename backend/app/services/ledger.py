# backend/app/services/ledger.py
"""
Stock ledger (kardex) - the only writer of StockItem.stock_on_hand.

Every change to a stock counter is an immutable LedgerEntry written in the
same transaction that updates the counter under a row lock, so for every
stock item resulting_stock[n] == resulting_stock[n-1] + quantity[n].
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Iterable, List, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import Clock, to_naive_utc, utcnow
from backend.app.core.database import run_atomic
from backend.app.core.exceptions import (
    InsufficientStockError,
    InvalidMovementDirectionError,
    InvalidQuantityError,
    StockItemNotFoundError,
)
from backend.app.core.logging import get_logger
from backend.app.core.metrics import ledger_entries_total
from backend.app.models.stock import LedgerEntry, MovementDirection, MovementKind, StockItem, StockKey

logger = get_logger(__name__)


@dataclass
class LedgerPage:
    entries: List[LedgerEntry]
    total: int
    limit: int
    offset: int


@dataclass
class MovementPage(LedgerPage):
    """Organization-wide page of movements with totals over every matching entry."""
    inbound_units: int = 0
    outbound_units: int = 0
    total_value: Decimal = Decimal("0")


@dataclass
class MovementSummary:
    movement_kind: str
    movements: int
    units: int
    total_value: Decimal


@dataclass
class LedgerSummary:
    by_kind: List[MovementSummary] = field(default_factory=list)
    inbound_units: int = 0
    outbound_units: int = 0
    total_value: Decimal = Decimal("0")


@dataclass
class ReconciliationReport:
    stock_item_id: int
    entries_checked: int
    broken_entry_ids: List[int]
    stock_on_hand: int
    ledger_stock: Optional[int]

    @property
    def reconciled(self) -> bool:
        if self.broken_entry_ids:
            return False
        return self.ledger_stock is None or self.ledger_stock == self.stock_on_hand


def stock_scope(organization_id: int, key: StockKey) -> list:
    """WHERE conditions selecting exactly one stock item; NULL parts match NULL."""
    conditions = [
        StockItem.organization_id == organization_id,
        StockItem.product_id == key.product_id,
    ]
    for column, value in ((StockItem.variant_id, key.variant_id), (StockItem.branch_id, key.branch_id)):
        conditions.append(column.is_(None) if value is None else column == value)
    return conditions


class StockLedger:
    """Ledger operations for one organization, on behalf of one actor."""

    def __init__(
        self,
        session: AsyncSession,
        organization_id: int,
        actor_id: int,
        clock: Clock = utcnow,
        max_attempts: int = 3,
    ):
        self.session = session
        self.organization_id = organization_id
        self.actor_id = actor_id
        self.clock = clock
        self.max_attempts = max_attempts

    async def get_stock_item(self, key: StockKey, lock: bool = False) -> StockItem:
        """
        Catalog lookup of a stock item, scoped to the organization.

        With lock=True the row is selected FOR UPDATE and refreshed from the
        database, so the caller sees the committed counter it now owns.
        """
        query = select(StockItem).where(and_(*stock_scope(self.organization_id, key)))
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        item = result.scalar_one_or_none()
        if item is None:
            raise StockItemNotFoundError(key.product_id, key.variant_id, key.branch_id)
        return item

    async def lock_stock_items(self, keys: Iterable[StockKey]) -> dict[StockKey, StockItem]:
        """Lock several stock items one by one in ascending key order."""
        items = {}
        for key in sorted(set(keys), key=StockKey.sort_key):
            items[key] = await self.get_stock_item(key, lock=True)
        return items

    async def append(
        self,
        key: StockKey,
        kind: MovementKind | str,
        quantity: int,
        unit_cost: Optional[Decimal] = None,
        reference: Optional[str] = None,
        reason: Optional[str] = None,
        reservation_id: Optional[int] = None,
    ) -> LedgerEntry:
        """
        Apply a signed movement to a stock item and write its ledger entry.

        Runs inside the caller's transaction (the caller commits). Raises
        InvalidQuantityError, InvalidMovementDirectionError,
        StockItemNotFoundError or InsufficientStockError; nothing is written
        in those cases.
        """
        kind = MovementKind(kind)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity == 0:
            raise InvalidQuantityError("Movement quantity must be a non-zero integer")
        if (quantity > 0) != kind.is_inbound:
            raise InvalidMovementDirectionError(kind.value, quantity)

        item = await self.get_stock_item(key, lock=True)
        resulting_stock = item.stock_on_hand + quantity
        if resulting_stock < 0:
            raise InsufficientStockError([{
                **key.as_dict(),
                "requested": -quantity,
                "available": item.stock_on_hand,
            }])

        total_value = None
        if unit_cost is not None:
            unit_cost = Decimal(unit_cost)
            total_value = abs(quantity) * unit_cost

        entry = LedgerEntry(
            organization_id=self.organization_id,
            stock_item_id=item.id,
            product_id=item.product_id,
            variant_id=item.variant_id,
            branch_id=item.branch_id,
            movement_kind=kind.value,
            quantity=quantity,
            resulting_stock=resulting_stock,
            unit_cost=unit_cost,
            total_value=total_value,
            reference=reference,
            reason=reason,
            reservation_id=reservation_id,
            actor_id=self.actor_id,
            created_at=self.clock(),
        )
        item.stock_on_hand = resulting_stock
        self.session.add(entry)
        await self.session.flush()

        ledger_entries_total.labels(movement_kind=kind.value).inc()
        logger.info(
            "Ledger entry appended",
            entry_id=entry.id,
            stock_item_id=item.id,
            product_id=item.product_id,
            movement_kind=kind.value,
            quantity=quantity,
            resulting_stock=resulting_stock,
        )
        return entry

    async def record(self, key: StockKey, kind: MovementKind | str, quantity: int, **kwargs) -> LedgerEntry:
        """append() as a standalone unit of work (manual purchases, adjustments, shrinkage)."""
        return await run_atomic(
            self.session,
            lambda: self.append(key, kind, quantity, **kwargs),
            operation="ledger.record",
            max_attempts=self.max_attempts,
        )

    def _history_query(
        self,
        stock_item_id: int,
        movement_kind: Optional[str],
        date_from: Optional[datetime],
        date_to: Optional[datetime],
    ):
        query = select(LedgerEntry).where(
            LedgerEntry.organization_id == self.organization_id,
            LedgerEntry.stock_item_id == stock_item_id,
        )
        if movement_kind:
            query = query.where(LedgerEntry.movement_kind == MovementKind(movement_kind).value)
        if date_from:
            query = query.where(LedgerEntry.created_at >= to_naive_utc(date_from))
        if date_to:
            query = query.where(LedgerEntry.created_at <= to_naive_utc(date_to))
        return query

    async def history(
        self,
        key: StockKey,
        movement_kind: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        after_id: Optional[int] = None,
        page_size: int = 100,
    ) -> AsyncIterator[LedgerEntry]:
        """
        Iterate entries of one stock item oldest first, fetching page_size rows
        at a time. Resume an interrupted walk by passing the last seen id as
        after_id.
        """
        item = await self.get_stock_item(key)
        base = self._history_query(item.id, movement_kind, date_from, date_to)
        cursor = after_id or 0
        while True:
            result = await self.session.execute(
                base.where(LedgerEntry.id > cursor).order_by(LedgerEntry.id).limit(page_size)
            )
            rows = result.scalars().all()
            for row in rows:
                yield row
            if len(rows) < page_size:
                return
            cursor = rows[-1].id

    async def history_page(
        self,
        key: StockKey,
        movement_kind: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        newest_first: bool = False,
    ) -> LedgerPage:
        """One page of the kardex plus the total number of matching entries."""
        item = await self.get_stock_item(key)
        base = self._history_query(item.id, movement_kind, date_from, date_to)
        order = LedgerEntry.id.desc() if newest_first else LedgerEntry.id
        result = await self.session.execute(base.order_by(order).limit(limit).offset(offset))
        total = await self.session.scalar(select(func.count()).select_from(base.subquery()))
        return LedgerPage(entries=list(result.scalars().all()), total=total or 0, limit=limit, offset=offset)

    async def list_movements(
        self,
        movement_kind: Optional[str] = None,
        direction: Optional[str] = None,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        branch_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> MovementPage:
        """
        Movements of the whole organization, newest first.

        Totals (count, inbound and outbound units, value) cover every
        matching entry, not just the returned page.
        """
        conditions = [LedgerEntry.organization_id == self.organization_id]
        if movement_kind:
            conditions.append(LedgerEntry.movement_kind == MovementKind(movement_kind).value)
        if direction:
            conditions.append(LedgerEntry.movement_kind.in_(MovementDirection(direction).kinds()))
        for column, value in (
            (LedgerEntry.product_id, product_id),
            (LedgerEntry.variant_id, variant_id),
            (LedgerEntry.branch_id, branch_id),
        ):
            if value is not None:
                conditions.append(column == value)
        if date_from:
            conditions.append(LedgerEntry.created_at >= to_naive_utc(date_from))
        if date_to:
            conditions.append(LedgerEntry.created_at <= to_naive_utc(date_to))

        result = await self.session.execute(
            select(LedgerEntry)
            .where(*conditions)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        totals = (await self.session.execute(
            select(
                func.count(LedgerEntry.id),
                func.sum(case((LedgerEntry.quantity > 0, LedgerEntry.quantity), else_=0)),
                func.sum(case((LedgerEntry.quantity < 0, -LedgerEntry.quantity), else_=0)),
                func.sum(LedgerEntry.total_value),
            ).where(*conditions)
        )).one()
        count, inbound, outbound, value = totals
        return MovementPage(
            entries=list(result.scalars().all()),
            total=count or 0,
            limit=limit,
            offset=offset,
            inbound_units=int(inbound or 0),
            outbound_units=int(outbound or 0),
            total_value=Decimal(str(value or 0)),
        )

    async def summary(self, date_from: datetime, date_to: datetime) -> LedgerSummary:
        """Movement statistics for the organization over a period, grouped by kind."""
        date_from, date_to = to_naive_utc(date_from), to_naive_utc(date_to)
        result = await self.session.execute(
            select(
                LedgerEntry.movement_kind,
                func.count(LedgerEntry.id),
                func.sum(func.abs(LedgerEntry.quantity)),
                func.sum(LedgerEntry.total_value),
            )
            .where(
                LedgerEntry.organization_id == self.organization_id,
                LedgerEntry.created_at >= date_from,
                LedgerEntry.created_at <= date_to,
            )
            .group_by(LedgerEntry.movement_kind)
            .order_by(func.count(LedgerEntry.id).desc())
        )
        summary = LedgerSummary()
        for kind, movements, units, value in result.all():
            row = MovementSummary(
                movement_kind=kind,
                movements=movements,
                units=int(units or 0),
                total_value=Decimal(str(value or 0)),
            )
            summary.by_kind.append(row)
            if MovementKind(kind).is_inbound:
                summary.inbound_units += row.units
            else:
                summary.outbound_units += row.units
            summary.total_value += row.total_value
        return summary

    async def verify(self, key: StockKey) -> ReconciliationReport:
        """
        Walk the ledger of one stock item and check the reconciliation chain.

        The first entry only has to be consistent with a non-negative opening
        balance; the last resulting_stock must equal the live counter.
        """
        item = await self.get_stock_item(key)
        broken: List[int] = []
        previous: Optional[int] = None
        checked = 0
        async for entry in self.history(key, page_size=500):
            checked += 1
            opening = previous if previous is not None else entry.resulting_stock - entry.quantity
            if opening < 0 or entry.resulting_stock != opening + entry.quantity:
                broken.append(entry.id)
            previous = entry.resulting_stock
        if previous is not None and previous != item.stock_on_hand:
            logger.error(
                "Ledger out of sync with stock counter",
                stock_item_id=item.id,
                ledger_stock=previous,
                stock_on_hand=item.stock_on_hand,
            )
        return ReconciliationReport(
            stock_item_id=item.id,
            entries_checked=checked,
            broken_entry_ids=broken,
            stock_on_hand=item.stock_on_hand,
            ledger_stock=previous,
        )
