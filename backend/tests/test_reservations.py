"""
Tests for the reservation manager.

Covers:
- Admission against availability and the insufficient-stock report
- All-or-nothing batches
- Confirm coupled to the ledger, cancel, cancel by origin, extend
- Lazy expiry: a lapsed hold can never be confirmed, canceled or extended
- TTL and batch limits, tenant isolation, listing by effective state

ORM objects returned before a failed operation are expired by the rollback,
so tests keep ids in locals and re-read state through the manager.
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from backend.app.core.exceptions import (
    BatchPartialFailure,
    BatchTooLargeError,
    InsufficientStockError,
    InvalidQuantityError,
    InvalidTTLError,
    ReservationNotActiveError,
    ReservationNotFoundError,
    StockItemNotFoundError,
)
from backend.app.models.reservation import OriginKind, Reservation
from backend.app.models.stock import LedgerEntry, MovementKind, StockKey
from backend.app.services.reservations import ReservationManager, ReservationRequest

from backend.tests.conftest import ACTOR_ID, ORG_ID, OTHER_ORG_ID

KEY = StockKey(100)


@pytest.fixture
def manager(test_session, clock):
    return ReservationManager(test_session, ORG_ID, ACTOR_ID, clock=clock)


async def reservation_count(session) -> int:
    return await session.scalar(select(func.count(Reservation.id)))


class TestReserveConfirmCancel:
    @pytest.mark.asyncio
    async def test_reserve_cancel_confirm_walkthrough(self, test_session, stock_item, manager):
        availability = manager.availability

        first = await manager.reserve(KEY, 7, OriginKind.POS_SALE)
        first_id = first.id
        assert first.state == "active"
        assert await availability.available(KEY) == 3

        with pytest.raises(InsufficientStockError) as exc_info:
            await manager.reserve(KEY, 5, OriginKind.POS_SALE)
        assert exc_info.value.items == [{
            "product_id": 100, "variant_id": None, "branch_id": None,
            "requested": 5, "available": 3,
        }]

        canceled = await manager.cancel(first_id)
        assert canceled.state == "canceled"
        assert await availability.available(KEY) == 10

        second = await manager.reserve(KEY, 3, OriginKind.POS_SALE)
        entry = await manager.confirm(second.id)

        assert entry.quantity == -3
        assert entry.resulting_stock == 7
        assert entry.movement_kind == "outbound_sale"
        assert entry.reservation_id == second.id
        await test_session.refresh(stock_item)
        assert stock_item.stock_on_hand == 7
        assert (await manager.get(second.id)).state == "confirmed"
        assert await availability.available(KEY) == 7

    @pytest.mark.asyncio
    async def test_reserve_sets_default_ttl(self, stock_item, manager, clock):
        reservation = await manager.reserve(KEY, 1, OriginKind.SALES_ORDER, origin_id=5)
        assert reservation.expires_at == clock.now + timedelta(minutes=15)
        assert reservation.created_by == ACTOR_ID
        assert reservation.origin_kind == "sales_order"
        assert reservation.origin_id == 5

    @pytest.mark.asyncio
    async def test_ttl_above_max_is_clamped(self, stock_item, manager, clock):
        reservation = await manager.reserve(KEY, 1, OriginKind.POS_SALE, ttl_minutes=500)
        assert reservation.expires_at == clock.now + timedelta(minutes=120)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5])
    async def test_non_positive_ttl_rejected(self, stock_item, manager, ttl):
        with pytest.raises(InvalidTTLError):
            await manager.reserve(KEY, 1, OriginKind.POS_SALE, ttl_minutes=ttl)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_non_positive_quantity_rejected(self, test_session, stock_item, manager, quantity):
        with pytest.raises(InvalidQuantityError):
            await manager.reserve(KEY, quantity, OriginKind.POS_SALE)
        assert await reservation_count(test_session) == 0

    @pytest.mark.asyncio
    async def test_unknown_stock_item(self, stock_item, manager):
        with pytest.raises(StockItemNotFoundError):
            await manager.reserve(StockKey(404), 1, OriginKind.POS_SALE)

    @pytest.mark.asyncio
    async def test_reserve_exactly_available(self, stock_item, manager):
        await manager.reserve(KEY, 10, OriginKind.POS_SALE)
        with pytest.raises(InsufficientStockError):
            await manager.reserve(KEY, 1, OriginKind.POS_SALE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("origin, kind", [
        (OriginKind.SERVICE_APPOINTMENT, "outbound_service_use"),
        (OriginKind.TRANSFER, "outbound_transfer"),
        (OriginKind.SALES_ORDER, "outbound_sale"),
    ])
    async def test_confirm_movement_kind_follows_origin(self, stock_item, manager, origin, kind):
        reservation = await manager.reserve(KEY, 2, origin, origin_id=31)
        entry = await manager.confirm(reservation.id)
        assert entry.movement_kind == kind
        assert entry.reference == f"{origin.value}:31"

    @pytest.mark.asyncio
    async def test_confirm_twice_fails(self, stock_item, manager):
        reservation = await manager.reserve(KEY, 2, OriginKind.POS_SALE)
        reservation_id = reservation.id
        await manager.confirm(reservation_id)

        with pytest.raises(ReservationNotActiveError) as exc_info:
            await manager.confirm(reservation_id)
        assert exc_info.value.state == "confirmed"

    @pytest.mark.asyncio
    async def test_confirm_fails_when_stock_dropped_below_hold(self, test_session, stock_item, manager):
        reservation = await manager.reserve(KEY, 8, OriginKind.SALES_ORDER)
        reservation_id = reservation.id
        # Manual shrinkage does not look at holds
        await manager.ledger.record(KEY, MovementKind.OUTBOUND_SHRINKAGE, -5)

        with pytest.raises(InsufficientStockError):
            await manager.confirm(reservation_id)

        assert (await manager.get(reservation_id)).state == "active"
        await test_session.refresh(stock_item)
        assert stock_item.stock_on_hand == 5
        entries = await test_session.scalar(select(func.count(LedgerEntry.id)))
        assert entries == 1

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, stock_item, manager):
        reservation = await manager.reserve(KEY, 2, OriginKind.POS_SALE)
        await manager.cancel(reservation.id)
        again = await manager.cancel(reservation.id)
        assert again.state == "canceled"

    @pytest.mark.asyncio
    async def test_cancel_confirmed_fails(self, stock_item, manager):
        reservation = await manager.reserve(KEY, 2, OriginKind.POS_SALE)
        reservation_id = reservation.id
        await manager.confirm(reservation_id)

        with pytest.raises(ReservationNotActiveError):
            await manager.cancel(reservation_id)

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, stock_item, manager):
        with pytest.raises(ReservationNotFoundError):
            await manager.confirm(12345)
        with pytest.raises(ReservationNotFoundError):
            await manager.cancel(12345)

    @pytest.mark.asyncio
    async def test_other_tenant_sees_nothing(self, test_session, stock_item, manager, clock):
        reservation = await manager.reserve(KEY, 2, OriginKind.POS_SALE)
        reservation_id = reservation.id
        other = ReservationManager(test_session, OTHER_ORG_ID, ACTOR_ID, clock=clock)

        with pytest.raises(ReservationNotFoundError):
            await other.get(reservation_id)
        with pytest.raises(ReservationNotFoundError):
            await other.cancel(reservation_id)
        assert (await manager.get(reservation_id)).state == "active"


class TestExpiry:
    @pytest.mark.asyncio
    async def test_lapsed_hold_cannot_be_confirmed(self, test_session, stock_item, manager, clock):
        reservation = await manager.reserve(KEY, 4, OriginKind.POS_SALE, ttl_minutes=5)
        reservation_id = reservation.id
        clock.advance(minutes=6)

        with pytest.raises(ReservationNotActiveError) as exc_info:
            await manager.confirm(reservation_id)

        assert exc_info.value.state == "expired"
        await test_session.refresh(stock_item)
        assert stock_item.stock_on_hand == 10

    @pytest.mark.asyncio
    async def test_lapsed_hold_cannot_be_extended_or_canceled(self, stock_item, manager, clock):
        reservation = await manager.reserve(KEY, 4, OriginKind.POS_SALE, ttl_minutes=5)
        reservation_id = reservation.id
        clock.advance(minutes=5)

        with pytest.raises(ReservationNotActiveError):
            await manager.extend(reservation_id, 30)
        with pytest.raises(ReservationNotActiveError):
            await manager.cancel(reservation_id)

        fetched = await manager.get(reservation_id)
        assert fetched.state == "active"
        assert fetched.effective_state(clock.now) == "expired"

    @pytest.mark.asyncio
    async def test_extend_pushes_expiry(self, stock_item, manager, clock):
        reservation = await manager.reserve(KEY, 4, OriginKind.POS_SALE, ttl_minutes=10)
        original = reservation.expires_at
        clock.advance(minutes=9)

        extended = await manager.extend(reservation.id, 20)

        assert extended.expires_at == original + timedelta(minutes=20)
        clock.advance(minutes=15)
        assert await manager.availability.available(KEY) == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize("extra", [0, -1, 61, True])
    async def test_extend_bounds(self, stock_item, manager, extra):
        reservation = await manager.reserve(KEY, 1, OriginKind.POS_SALE)
        with pytest.raises(InvalidTTLError):
            await manager.extend(reservation.id, extra)


class TestBatches:
    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self, test_session, make_stock_item, manager):
        for product_id in range(1, 6):
            await make_stock_item(product_id=product_id, stock_on_hand=0 if product_id == 3 else 10)
        lines = [ReservationRequest(product_id=p, quantity=2) for p in range(1, 6)]

        with pytest.raises(InsufficientStockError) as exc_info:
            await manager.reserve_batch(lines, OriginKind.SALES_ORDER, origin_id=88)

        assert [item["product_id"] for item in exc_info.value.items] == [3]
        assert await reservation_count(test_session) == 0

    @pytest.mark.asyncio
    async def test_batch_reports_every_short_item(self, make_stock_item, manager):
        await make_stock_item(product_id=1, stock_on_hand=1)
        await make_stock_item(product_id=2, stock_on_hand=1)
        lines = [ReservationRequest(product_id=2, quantity=5), ReservationRequest(product_id=1, quantity=5)]

        with pytest.raises(InsufficientStockError) as exc_info:
            await manager.reserve_batch(lines, OriginKind.SALES_ORDER)

        assert [item["product_id"] for item in exc_info.value.items] == [1, 2]

    @pytest.mark.asyncio
    async def test_batch_lines_for_same_item_are_summed(self, stock_item, manager):
        lines = [ReservationRequest(product_id=100, quantity=6), ReservationRequest(product_id=100, quantity=5)]

        with pytest.raises(InsufficientStockError) as exc_info:
            await manager.reserve_batch(lines, OriginKind.POS_SALE)

        assert exc_info.value.items[0]["requested"] == 11

    @pytest.mark.asyncio
    async def test_batch_success(self, make_stock_item, manager, clock):
        await make_stock_item(product_id=1, stock_on_hand=5)
        await make_stock_item(product_id=2, stock_on_hand=5, branch_id=4)
        lines = [
            ReservationRequest(product_id=1, quantity=2),
            ReservationRequest(product_id=2, quantity=5, branch_id=4),
        ]

        reservations = await manager.reserve_batch(lines, OriginKind.SALES_ORDER, origin_id=7, ttl_minutes=30)

        assert [r.quantity for r in reservations] == [2, 5]
        assert {r.expires_at for r in reservations} == {clock.now + timedelta(minutes=30)}
        assert await manager.availability.available(StockKey(2, branch_id=4)) == 0

    @pytest.mark.asyncio
    async def test_batch_size_limits(self, stock_item, manager):
        with pytest.raises(InvalidQuantityError):
            await manager.reserve_batch([], OriginKind.POS_SALE)
        too_many = [ReservationRequest(product_id=100, quantity=1)] * 51
        with pytest.raises(BatchTooLargeError):
            await manager.reserve_batch(too_many, OriginKind.POS_SALE)

    @pytest.mark.asyncio
    async def test_confirm_batch(self, test_session, make_stock_item, manager):
        item_a = await make_stock_item(product_id=1, stock_on_hand=5)
        item_b = await make_stock_item(product_id=2, stock_on_hand=5)
        a = await manager.reserve(StockKey(1), 2, OriginKind.SALES_ORDER, origin_id=1)
        b = await manager.reserve(StockKey(2), 3, OriginKind.SALES_ORDER, origin_id=1)

        entries = await manager.confirm_batch([a.id, b.id, a.id])

        assert len(entries) == 2
        await test_session.refresh(item_a)
        await test_session.refresh(item_b)
        assert (item_a.stock_on_hand, item_b.stock_on_hand) == (3, 2)

    @pytest.mark.asyncio
    async def test_confirm_batch_is_all_or_nothing(self, test_session, make_stock_item, manager):
        item_a = await make_stock_item(product_id=1, stock_on_hand=5)
        await make_stock_item(product_id=2, stock_on_hand=5)
        a = await manager.reserve(StockKey(1), 2, OriginKind.SALES_ORDER)
        b = await manager.reserve(StockKey(2), 3, OriginKind.SALES_ORDER)
        a_id, b_id = a.id, b.id
        await manager.cancel(b_id)

        with pytest.raises(ReservationNotActiveError):
            await manager.confirm_batch([a_id, b_id])

        assert (await manager.get(a_id)).state == "active"
        await test_session.refresh(item_a)
        assert item_a.stock_on_hand == 5


class TestCancelByOrigin:
    @pytest.mark.asyncio
    async def test_partial_outcome(self, stock_item, manager, clock):
        confirmed = await manager.reserve(KEY, 1, OriginKind.SALES_ORDER, origin_id=77)
        await manager.confirm(confirmed.id)
        lapsed = await manager.reserve(KEY, 1, OriginKind.SALES_ORDER, origin_id=77, ttl_minutes=1)
        active = await manager.reserve(KEY, 2, OriginKind.SALES_ORDER, origin_id=77, ttl_minutes=30)
        unrelated = await manager.reserve(KEY, 1, OriginKind.SALES_ORDER, origin_id=78)
        confirmed_id, lapsed_id, active_id, unrelated_id = confirmed.id, lapsed.id, active.id, unrelated.id
        clock.advance(minutes=2)

        outcome = await manager.cancel_by_origin(OriginKind.SALES_ORDER, 77)

        assert [r.id for r in outcome.canceled] == [active_id]
        assert outcome.failures == [
            {"reservation_id": confirmed_id, "state": "confirmed"},
            {"reservation_id": lapsed_id, "state": "expired"},
        ]
        assert (await manager.get(lapsed_id)).state == "expired"
        assert (await manager.get(unrelated_id)).state == "active"
        with pytest.raises(BatchPartialFailure):
            outcome.raise_for_failures()

    @pytest.mark.asyncio
    async def test_no_matches(self, stock_item, manager):
        outcome = await manager.cancel_by_origin("pos_sale", 1)
        assert outcome.count == 0
        outcome.raise_for_failures()


class TestListing:
    @pytest.mark.asyncio
    async def test_list_by_effective_state(self, stock_item, manager, clock):
        short = await manager.reserve(KEY, 1, OriginKind.POS_SALE, ttl_minutes=1)
        long = await manager.reserve(KEY, 1, OriginKind.POS_SALE, ttl_minutes=60)
        short_id, long_id = short.id, long.id
        clock.advance(minutes=5)

        active = await manager.list_reservations(state="active")
        expired = await manager.list_reservations(state="expired")

        assert [r.id for r in active] == [long_id]
        assert [r.id for r in expired] == [short_id]

    @pytest.mark.asyncio
    async def test_list_filters_and_paging(self, make_stock_item, manager):
        await make_stock_item(product_id=1, stock_on_hand=50)
        await make_stock_item(product_id=2, stock_on_hand=50)
        for _ in range(3):
            await manager.reserve(StockKey(1), 1, OriginKind.POS_SALE, origin_id=5)
        await manager.reserve(StockKey(2), 1, OriginKind.TRANSFER, origin_id=6)

        assert len(await manager.list_reservations(product_id=1)) == 3
        assert len(await manager.list_reservations(origin_kind="transfer")) == 1
        assert len(await manager.list_reservations(origin_id=5, limit=2)) == 2
        assert len(await manager.list_reservations(origin_id=5, limit=2, offset=2)) == 1
