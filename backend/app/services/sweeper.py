"""
Expiration sweeper: materialises lapsed holds as stored state 'expired'.

Availability never depends on it (the effective-state predicate already
ignores lapsed holds); it keeps stored state honest for reporting. Each
sweep is one bounded conditional UPDATE, so running it twice, or in two
processes at once, or next to a confirm/cancel of the same row, is safe: a
row that already left 'active' simply no longer matches.
"""
import asyncio
import time

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import Clock, utcnow
from backend.app.core.database import run_atomic
from backend.app.core.logging import get_logger
from backend.app.core.metrics import reservations_expired_total, sweeper_duration_seconds
from backend.app.models.reservation import Reservation, ReservationState

logger = get_logger(__name__)

ACTIVE = ReservationState.ACTIVE.value
EXPIRED = ReservationState.EXPIRED.value


class ExpirationSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
        batch_size: int = 500,
        interval_seconds: float = 30,
        max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts

    async def sweep_once(self) -> int:
        """Expire up to batch_size lapsed holds. Returns how many rows changed."""
        started = time.perf_counter()
        now = self.clock()
        # SKIP LOCKED: rows held by an in-flight confirm/cancel are left for the next sweep
        lapsed = (
            select(Reservation.id)
            .where(Reservation.state == ACTIVE, Reservation.expires_at <= now)
            .order_by(Reservation.expires_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        statement = (
            update(Reservation)
            .where(
                Reservation.id.in_(lapsed),
                Reservation.state == ACTIVE,
                Reservation.expires_at <= now,
            )
            .values(state=EXPIRED, expired_at=now)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            async def work():
                result = await session.execute(statement)
                return result.rowcount or 0

            expired = await run_atomic(
                session, work, operation="sweeper.sweep", max_attempts=self.max_attempts
            )

        sweeper_duration_seconds.observe(time.perf_counter() - started)
        if expired:
            reservations_expired_total.inc(expired)
            logger.info("Expired lapsed reservations", count=expired)
        return expired

    async def run_forever(self) -> None:
        """Sweep on a fixed interval until cancelled; a full batch triggers an immediate re-sweep."""
        logger.info(
            "Expiration sweeper started",
            interval_seconds=self.interval_seconds,
            batch_size=self.batch_size,
        )
        while True:
            try:
                expired = await self.sweep_once()
            except Exception as e:
                logger.error("Expiration sweep failed", error=str(e))
                expired = 0
            if expired < self.batch_size:
                await asyncio.sleep(self.interval_seconds)
