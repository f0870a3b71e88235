"""Time-boxed stock holds."""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.base import Base
from backend.app.core.clock import utcnow
from backend.app.models.stock import StockKey


class ReservationState(str, enum.Enum):
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"
    EXPIRED = "expired"


class OriginKind(str, enum.Enum):
    POS_SALE = "pos_sale"
    SALES_ORDER = "sales_order"
    SERVICE_APPOINTMENT = "service_appointment"
    TRANSFER = "transfer"


class Reservation(Base):
    """
    A hold on `quantity` units of one stock item.

    `state` is the stored state. A row still stored as active whose
    expires_at has passed is effectively expired; use effective_state()
    (or availability.effectively_active in queries) rather than `state`.
    """
    __tablename__ = 'stock_reservations'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_item_id: Mapped[int] = mapped_column(ForeignKey('stock_items.id'), nullable=False)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    branch_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    origin_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    origin_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    state: Mapped[str] = mapped_column(String(16), default=ReservationState.ACTIVE.value, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # set by the sweeper
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def effective_state(self, now: datetime) -> str:
        if self.state == ReservationState.ACTIVE.value and self.expires_at <= now:
            return ReservationState.EXPIRED.value
        return self.state

    @property
    def key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id, self.branch_id)

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_reservations_quantity_positive'),
        # Admission check: Σ quantity of active holds per stock item
        Index('ix_reservations_item_state_expires', 'stock_item_id', 'state', 'expires_at'),
        # Sweeper scan
        Index('ix_reservations_state_expires', 'state', 'expires_at'),
        Index('ix_reservations_org_origin', 'organization_id', 'origin_kind', 'origin_id'),
        Index('ix_reservations_org_created', 'organization_id', 'created_at'),
    )
