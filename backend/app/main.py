import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api import reservations, stock
from backend.app.api.deps import get_session
from backend.app.core.database import async_session, engine
from backend.app.core.limiter import limiter
from backend.app.core.logging import get_logger, setup_logging
from backend.app.core.metrics import PrometheusMiddleware, get_metrics_response
from backend.app.core.settings import get_settings
from backend.app.services.sweeper import ExpirationSweeper

VERSION = "1.0.0"


try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)

logger = get_logger(__name__)

logger.info(
    "Stock reservation engine configured",
    environment=settings.ENVIRONMENT,
    db_host=settings.DB_HOST,
    sweeper_enabled=settings.SWEEPER_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Runs the expiration sweeper for the lifetime of the app, then releases the pool."""
    logger.info("Application starting up", version=VERSION)
    sweeper_task = None
    if settings.SWEEPER_ENABLED:
        sweeper = ExpirationSweeper(
            async_session,
            batch_size=settings.SWEEPER_BATCH_SIZE,
            interval_seconds=settings.SWEEPER_INTERVAL_SECONDS,
            max_attempts=settings.TX_MAX_ATTEMPTS,
        )
        sweeper_task = asyncio.create_task(sweeper.run_forever())
    yield
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
    logger.info("Application shutting down")
    await engine.dispose()


app = FastAPI(title="Stock Reservation Engine", version=VERSION, lifespan=lifespan)

# Routers use the same instance for @limiter.limit
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Production startup already refuses an empty origin list
cors_origins = settings.allowed_origins_list or ["*"]
if cors_origins == ["*"]:
    logger.warning("CORS open to all origins", environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(PrometheusMiddleware)

app.include_router(reservations.router, prefix="/reservations", tags=["reservations"])
app.include_router(stock.router, prefix="/stock", tags=["stock"])


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """Health check for monitoring and orchestration; pings the database."""
    health_status = {
        "status": "healthy",
        "version": VERSION,
        "checks": {"database": "ok"},
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"
    return health_status


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    """Prometheus metrics (OpenMetrics format when openmetrics=true)."""
    return get_metrics_response(openmetrics=openmetrics)
