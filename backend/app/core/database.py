import asyncio
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from backend.app.core.logging import get_logger
from backend.app.core.metrics import transaction_retries_total
from backend.app.core.settings import get_settings

logger = get_logger(__name__)

T = TypeVar("T")

_settings = get_settings()

engine = create_async_engine(
    url=_settings.db_url,
    echo=False,
    pool_size=_settings.DB_POOL_SIZE,
    max_overflow=_settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=_settings.DB_POOL_RECYCLE,
    pool_timeout=30,
)
async_session = async_sessionmaker(engine, expire_on_commit=False)

# PostgreSQL: serialization_failure, deadlock_detected, lock_not_available
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})
RETRY_BACKOFF_SECONDS = 0.05


def is_transient_error(exc: DBAPIError) -> bool:
    """True when the failure reflects lock contention rather than a broken statement."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in TRANSIENT_SQLSTATES:
        return True
    return "database is locked" in str(orig)


async def run_atomic(
    session: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    operation: str,
    max_attempts: int = 3,
) -> T:
    """
    Run `work` as one transaction on `session` and commit it.

    Any exception rolls the whole unit back. Only transient contention errors
    (see is_transient_error) are retried, up to `max_attempts` in total; `work`
    must therefore re-read everything it needs on each call.
    """
    attempt = 1
    while True:
        try:
            result = await work()
            await session.commit()
            return result
        except DBAPIError as exc:
            await session.rollback()
            if attempt >= max_attempts or not is_transient_error(exc):
                raise
            transaction_retries_total.labels(operation=operation).inc()
            logger.warning(
                "Transaction contention, retrying",
                operation=operation,
                attempt=attempt,
                error=str(exc.orig),
            )
            await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
            attempt += 1
        except Exception:
            await session.rollback()
            raise
