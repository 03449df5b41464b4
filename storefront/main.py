"""
Storefront Backend
FastAPI application entry point

- Guest cart cleanup scheduler (releases stock of expired guest carts)
- Refresh token cleanup scheduler
- Rate limiting with SlowAPI
- Error sanitization middleware
- Health endpoint with DB ping
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError as FastAPIRequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.routes import auth, cart, inventory, orders
from storefront.core.config import settings
from storefront.core.database import get_db, get_db_session
from storefront.core.error_handler import (
    ErrorSanitizationMiddleware,
    storefront_error_handler,
    validation_error_handler,
)
from storefront.core.exceptions import StorefrontError
from storefront.core.rate_limit import limiter, rate_limit_exceeded_handler
from storefront.services.cart_cleanup import cleanup_expired_guest_carts
from storefront.services.otp_dispatcher import otp_dispatcher
from storefront.services.refresh_token_service import refresh_token_service

logger = logging.getLogger(__name__)

_background_tasks: Dict[str, asyncio.Task] = {}
_cleanup_heartbeat: dict = {
    "cart_cleanup": {"last_run": None, "last_success": None, "processed": 0, "errors": 0},
    "token_cleanup": {"last_run": None, "last_success": None, "processed": 0, "errors": 0},
}


async def run_cart_cleanup() -> int:
    async with get_db_session() as db:
        stats = await cleanup_expired_guest_carts(db)
    return stats["processed"]


async def run_token_cleanup() -> int:
    async with get_db_session() as db:
        return await refresh_token_service.cleanup_expired_tokens(db)


async def periodic(name: str, job: Callable[[], Awaitable[int]], interval_minutes: int):
    """Run job every interval_minutes until cancelled, recording a heartbeat."""
    heartbeat = _cleanup_heartbeat[name]
    logger.info(f"{name} scheduler started (interval: {interval_minutes} minutes)")

    while True:
        heartbeat["last_run"] = datetime.now(timezone.utc).isoformat()
        try:
            heartbeat["processed"] += await job()
            heartbeat["last_success"] = datetime.now(timezone.utc).isoformat()
        except Exception as e:
            heartbeat["errors"] += 1
            logger.error(f"{name} failed: {e}")

        await asyncio.sleep(interval_minutes * 60)


def _start(name: str, job, interval_minutes: int, enabled: bool) -> Optional[asyncio.Task]:
    if not enabled:
        logger.info(f"{name} scheduler DISABLED via config")
        return None
    task = asyncio.create_task(periodic(name, job, interval_minutes))
    _background_tasks[name] = task
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start cleanup schedulers; stop them and close HTTP clients on shutdown."""
    _start("cart_cleanup", run_cart_cleanup, settings.CART_CLEANUP_INTERVAL_MINUTES, settings.CART_CLEANUP_ENABLED)
    _start("token_cleanup", run_token_cleanup, settings.TOKEN_CLEANUP_INTERVAL_MINUTES, settings.TOKEN_CLEANUP_ENABLED)

    yield

    for name, task in list(_background_tasks.items()):
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.info(f"{name} scheduler cancelled")
    _background_tasks.clear()

    await otp_dispatcher.close()


app = FastAPI(
    lifespan=lifespan,
    title=f"{settings.APP_NAME} API",
    description="Cart, checkout, inventory and session API for the jewelry storefront.",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url=None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(StorefrontError, storefront_error_handler)
app.add_exception_handler(FastAPIRequestValidationError, validation_error_handler)

app.add_middleware(ErrorSanitizationMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(cart.router, prefix="/api/cart", tags=["Cart"])
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(inventory.router, prefix="/api/inventory", tags=["Inventory"])


@app.get("/health", tags=["Health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check with a DB ping. Returns 503 if the database is unreachable."""
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cleanup": _cleanup_heartbeat,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check DB ping failed: {e}")
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
