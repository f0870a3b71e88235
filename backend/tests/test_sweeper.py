"""
Tests for the expiration sweeper.

The sweeper only materialises what the effective-state predicate already
says, so availability must read the same before and after a sweep.
"""
import asyncio

import pytest

from backend.app.models.reservation import OriginKind
from backend.app.models.stock import StockKey
from backend.app.services.reservations import ReservationManager
from backend.app.services.sweeper import ExpirationSweeper

from backend.tests.conftest import ACTOR_ID, ORG_ID

KEY = StockKey(100)


@pytest.fixture
def manager(test_session, clock):
    return ReservationManager(test_session, ORG_ID, ACTOR_ID, clock=clock)


@pytest.fixture
def sweeper(session_factory, clock):
    return ExpirationSweeper(session_factory, clock=clock, batch_size=500, interval_seconds=0)


@pytest.mark.asyncio
async def test_sweep_expires_only_lapsed_active_holds(test_session, stock_item, manager, sweeper, clock):
    lapsed = await manager.reserve(KEY, 2, OriginKind.POS_SALE, ttl_minutes=1)
    live = await manager.reserve(KEY, 3, OriginKind.POS_SALE, ttl_minutes=60)
    confirmed = await manager.reserve(KEY, 1, OriginKind.POS_SALE, ttl_minutes=1)
    await manager.confirm(confirmed.id)
    lapsed_id, live_id, confirmed_id = lapsed.id, live.id, confirmed.id
    clock.advance(minutes=5)

    before = await manager.availability.available(KEY)
    assert await sweeper.sweep_once() == 1

    # The sweep ran in its own session
    test_session.expire_all()
    swept = await manager.get(lapsed_id)
    assert swept.state == "expired"
    assert swept.expired_at == clock.now
    assert (await manager.get(live_id)).state == "active"
    assert (await manager.get(confirmed_id)).state == "confirmed"
    assert await manager.availability.available(KEY) == before == 6


@pytest.mark.asyncio
async def test_sweep_is_idempotent(stock_item, manager, sweeper, clock):
    await manager.reserve(KEY, 2, OriginKind.POS_SALE, ttl_minutes=1)
    clock.advance(minutes=2)

    assert await sweeper.sweep_once() == 1
    assert await sweeper.sweep_once() == 0


@pytest.mark.asyncio
async def test_sweep_leaves_hold_at_exact_expiry_boundary_alone(stock_item, manager, sweeper, clock):
    await manager.reserve(KEY, 2, OriginKind.POS_SALE, ttl_minutes=1)
    clock.advance(seconds=59)

    assert await sweeper.sweep_once() == 0


@pytest.mark.asyncio
async def test_sweep_respects_batch_size(stock_item, manager, session_factory, clock):
    for _ in range(3):
        await manager.reserve(KEY, 1, OriginKind.POS_SALE, ttl_minutes=1)
    clock.advance(minutes=2)
    sweeper = ExpirationSweeper(session_factory, clock=clock, batch_size=2)

    assert await sweeper.sweep_once() == 2
    assert await sweeper.sweep_once() == 1


@pytest.mark.asyncio
async def test_run_forever_survives_failed_sweep(session_factory, clock):
    sweeper = ExpirationSweeper(session_factory, clock=clock, interval_seconds=0)
    calls = []

    async def fake_sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("connection reset")
        if len(calls) == 3:
            raise asyncio.CancelledError()
        return 0

    sweeper.sweep_once = fake_sweep

    with pytest.raises(asyncio.CancelledError):
        await sweeper.run_forever()
    assert len(calls) == 3
