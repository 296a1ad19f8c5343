"""
Shipping quotation engine
FastAPI application entry point

- Quote cache sweep with heartbeat metrics
- Structured error envelope and error sanitization middleware
- Health endpoint with DB ping
- HTTP client and Redis lifecycle management
"""
import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from starlette.responses import JSONResponse
from sqlalchemy import text

from shipping_quotes.api.deps import close_clients, get_credential_manager
from shipping_quotes.api.routes import integrations, shipping
from shipping_quotes.core.config import settings, INTEGRATION_ENVIRONMENTS
from shipping_quotes.core.database import AsyncSessionLocal
from shipping_quotes.core.error_handler import register_error_handlers
from shipping_quotes.core.quote_cache import get_quote_cache, reset_quote_cache
from shipping_quotes.core.redis_client import close_redis
from shipping_quotes.jobs.cache_sweep import CacheSweepRunner
from shipping_quotes.services.oauth_credentials import MELHOR_ENVIO

logger = logging.getLogger(__name__)

_sweep_runner: Optional[CacheSweepRunner] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the cache sweep on startup; stop it and close shared clients on shutdown.
    """
    global _sweep_runner

    if settings.QUOTE_CACHE_SWEEP_ENABLED:
        _sweep_runner = CacheSweepRunner(await get_quote_cache())
        await _sweep_runner.start()
        logger.info("Quote cache sweep ENABLED")
    else:
        logger.info("Quote cache sweep DISABLED via config")

    yield

    if _sweep_runner is not None:
        await _sweep_runner.stop()
        _sweep_runner = None

    await close_clients()
    logger.info("Carrier HTTP clients closed")

    await close_redis()
    reset_quote_cache()


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="""
## Shipping quotation API

Quotes carrier services through the Melhor Envio aggregator and applies the
store's shipping rules (free shipping, production-day padding).

### Features
- **Quotes**: transient quotes with a short-lived cache
- **Snapshots**: persisted quotes that can be re-quoted later
- **Modalities**: sync the aggregator's services and switch them on/off
- **Integrations**: replace, re-authorize and validate aggregator credentials
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check and monitoring endpoints"},
        {"name": "shipping", "description": "Shipping quotes and modalities"},
        {"name": "integrations", "description": "Aggregator credential administration"},
    ],
)

register_error_handlers(app)

app.include_router(shipping.router)
app.include_router(integrations.router)


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": settings.APP_NAME,
        "version": "1.0.0",
        "status": "operational",
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with an actual DB ping, cache stats, sweep heartbeat and
    aggregator credential state.
    Returns 503 if the database is unreachable.
    """
    cache = await get_quote_cache()
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "quote_cache": await cache.stats(),
        "cache_sweep": _sweep_runner.heartbeat() if _sweep_runner else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    try:
        manager = get_credential_manager()
        health_status["credentials"] = {
            environment: (await manager.get_state(MELHOR_ENVIO, environment)).value
            for environment in INTEGRATION_ENVIRONMENTS
        }
    except Exception as e:
        logger.warning(f"Could not read credential state: {e}")

    return health_status
