#!/usr/bin/env python3
"""
Mark lapsed reservations as expired.

For deployments that run with SWEEPER_ENABLED=false and sweep from cron instead, e.g.:
    * * * * * cd /src && python -m scripts.sweep_reservations

Keeps sweeping until a batch comes back short, so a backlog is drained in one run.
"""
import asyncio

from backend.app.core.database import async_session, engine
from backend.app.core.logging import setup_logging
from backend.app.core.settings import get_settings
from backend.app.services.sweeper import ExpirationSweeper


async def sweep() -> int:
    settings = get_settings()
    sweeper = ExpirationSweeper(
        async_session,
        batch_size=settings.SWEEPER_BATCH_SIZE,
        max_attempts=settings.TX_MAX_ATTEMPTS,
    )
    total = 0
    try:
        while True:
            expired = await sweeper.sweep_once()
            total += expired
            if expired < sweeper.batch_size:
                break
    finally:
        await engine.dispose()
    print(f"Expired {total} reservation(s).")
    return total


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)
    asyncio.run(sweep())
