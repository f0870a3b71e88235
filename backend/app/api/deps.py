from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import Clock, utcnow
from backend.app.core.database import async_session
from backend.app.core.logging import bind_tenant
from backend.app.core.settings import get_settings
from backend.app.services.availability import AvailabilityCalculator
from backend.app.services.ledger import StockLedger
from backend.app.services.reservations import ReservationManager


@dataclass
class TenantContext:
    """Organization and acting user of a request."""
    organization_id: int
    actor_id: int


# One database session per request
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


def get_clock() -> Clock:
    return utcnow


async def require_internal_api_key(
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
):
    """Require the internal API key for service-to-service calls when one is configured."""
    settings = get_settings()
    if not settings.INTERNAL_API_KEY:
        return
    if not x_internal_key or x_internal_key != settings.INTERNAL_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing internal API key")


async def get_tenant(
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-Id"),
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    _: None = Depends(require_internal_api_key),
) -> TenantContext:
    """Tenant identity as forwarded by the gateway; missing or malformed headers are 401."""
    try:
        organization_id = int(x_organization_id)
        actor_id = int(x_actor_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="X-Organization-Id and X-Actor-Id headers are required")
    if organization_id < 1 or actor_id < 1:
        raise HTTPException(status_code=401, detail="X-Organization-Id and X-Actor-Id headers are required")
    bind_tenant(organization_id, actor_id)
    return TenantContext(organization_id=organization_id, actor_id=actor_id)


async def get_reservation_manager(
    tenant: TenantContext = Depends(get_tenant),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> ReservationManager:
    return ReservationManager(session, tenant.organization_id, tenant.actor_id, clock=clock)


async def get_ledger(
    tenant: TenantContext = Depends(get_tenant),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> StockLedger:
    return StockLedger(
        session, tenant.organization_id, tenant.actor_id, clock, get_settings().TX_MAX_ATTEMPTS
    )


async def get_availability(
    tenant: TenantContext = Depends(get_tenant),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AvailabilityCalculator:
    return AvailabilityCalculator(
        session, tenant.organization_id, clock, bulk_limit=get_settings().AVAILABILITY_BULK_MAX_ITEMS
    )
