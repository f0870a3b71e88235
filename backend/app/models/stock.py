"""Stock models: StockItem (catalog-owned counter) and LedgerEntry (kardex)."""
import enum
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.base import Base
from backend.app.core.clock import utcnow


class MovementKind(str, enum.Enum):
    """Kinds of stock-affecting events. The prefix fixes the sign of the quantity."""

    INBOUND_PURCHASE = "inbound_purchase"
    INBOUND_RETURN = "inbound_return"
    INBOUND_ADJUSTMENT = "inbound_adjustment"
    INBOUND_TRANSFER = "inbound_transfer"
    OUTBOUND_SALE = "outbound_sale"
    OUTBOUND_SERVICE_USE = "outbound_service_use"
    OUTBOUND_SHRINKAGE = "outbound_shrinkage"
    OUTBOUND_THEFT = "outbound_theft"
    OUTBOUND_RETURN = "outbound_return"
    OUTBOUND_ADJUSTMENT = "outbound_adjustment"
    OUTBOUND_TRANSFER = "outbound_transfer"

    @property
    def is_inbound(self) -> bool:
        return self.value.startswith("inbound_")


class MovementDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"

    def kinds(self) -> list[str]:
        inbound = self is MovementDirection.INBOUND
        return [kind.value for kind in MovementKind if kind.is_inbound == inbound]


class StockKey(NamedTuple):
    """Identifies one stock counter inside an organization."""

    product_id: int
    variant_id: Optional[int] = None
    branch_id: Optional[int] = None

    def sort_key(self) -> tuple:
        # NULL sorts first; used to take row locks in a stable order
        return (self.product_id, self.variant_id or 0, self.branch_id or 0)

    def as_dict(self) -> dict:
        return {"product_id": self.product_id, "variant_id": self.variant_id, "branch_id": self.branch_id}


class StockItem(Base):
    """
    Sellable stock of one product (optionally per variant and per branch).

    Rows belong to the catalog; this service only changes stock_on_hand and
    only through StockLedger.append. A NULL branch_id is the organization-wide
    counter for the product.
    """
    __tablename__ = 'stock_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    branch_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stock_on_hand: Mapped[int] = mapped_column(Integer, default=0, server_default='0', nullable=False)
    stock_min: Mapped[int] = mapped_column(Integer, default=0, server_default='0', nullable=False)
    stock_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id, self.branch_id)

    __table_args__ = (
        CheckConstraint('stock_on_hand >= 0', name='ck_stock_items_non_negative'),
        Index('ix_stock_items_org_product', 'organization_id', 'product_id'),
    )


# One row per scope. NULL variant or branch is folded to 0 so the
# organization-wide row is unique too (ids start at 1).
Index(
    "uq_stock_items_scope",
    StockItem.organization_id,
    StockItem.product_id,
    func.coalesce(StockItem.variant_id, 0),
    func.coalesce(StockItem.branch_id, 0),
    unique=True,
)


class LedgerEntry(Base):
    """Immutable record of one change to StockItem.stock_on_hand."""
    __tablename__ = 'stock_ledger_entries'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_item_id: Mapped[int] = mapped_column(ForeignKey('stock_items.id'), nullable=False)
    # Denormalized from the stock item for kardex queries
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    branch_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    movement_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    resulting_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    total_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    reservation_id: Mapped[Optional[int]] = mapped_column(ForeignKey('stock_reservations.id'), nullable=True)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('quantity <> 0', name='ck_ledger_quantity_non_zero'),
        CheckConstraint('resulting_stock >= 0', name='ck_ledger_resulting_non_negative'),
        Index('ix_ledger_stock_item_id', 'stock_item_id', 'id'),
        Index('ix_ledger_org_created', 'organization_id', 'created_at'),
        Index('ix_ledger_org_kind', 'organization_id', 'movement_kind'),
        Index('ix_ledger_reservation_id', 'reservation_id'),
    )
