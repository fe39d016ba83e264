"""ADSYNC — FastAPI Application Entry Point.

Ads platform sync and metrics cache service.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.database import init_db, test_connection, db_url, _mask_url
from app.scheduler.jobs import start_scheduler, stop_scheduler
from app.api.sync_routes import router as sync_router
from app.core.logging import get_logger
from app.core.rate_limits import RateLimitRegistry
from app.sync.reconciler import AccountSyncLocks

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 ADSYNC starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")

    app.state.rate_limits = RateLimitRegistry()
    app.state.sync_locks = AccountSyncLocks()
    if not IS_SERVERLESS:
        start_scheduler(app.state.rate_limits, app.state.sync_locks)
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("ADSYNC shut down")


app = FastAPI(
    title="ADSYNC",
    description="Reconciles ad accounts with the Meta Marketing API and serves cached ad metrics.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(sync_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "adsync",
        "version": "1.0.0",
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint — check database connectivity."""
    error = None
    connected = False
    try:
        connected = test_connection()
    except Exception as e:
        error = str(e)

    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": connected,
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
        "error": error,
    }
