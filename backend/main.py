from contextlib import asynccontextmanager
import traceback

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from api import indexer_router
from models.database import AsyncSessionLocal, init_database
from services.sync_orchestrator import recover_interrupted_runs, sync_orchestrator
from services.sync_status import run_registry
from services.holder_discovery import holder_discovery
from utils.logger import setup_logging, get_logger
from utils.rate_limiter import rate_limiter
from utils.utcnow import utcnow, to_iso

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting swap indexer API...")

    await init_database()
    logger.info("Database initialized")

    recovered = await recover_interrupted_runs()
    if recovered:
        logger.warning("Recovered interrupted sync runs", count=recovered)

    run_registry.install_log_handler()

    try:
        yield
    finally:
        logger.info("Shutting down...")
        await sync_orchestrator.feed_client.close()
        await holder_discovery.close()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Swap Indexer",
    description="Swap ingestion, cost-basis positions and PnL for tracked tokens",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500, content={"error": "internal_error", "message": str(exc)}
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(indexer_router, prefix="/api", tags=["Indexer"])


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/ready")
async def readiness_check():
    """Readiness probe: database reachable and swap feed answering."""
    checks = {"database": True, "swap_feed": True}
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Database readiness check failed", error=str(e))
        checks["database"] = False
    checks["swap_feed"] = await sync_orchestrator.feed_client.probe()

    return {
        "status": "ready" if all(checks.values()) else "not_ready",
        "checks": checks,
        "syncRunning": run_registry.is_running,
        "rateLimits": rate_limiter.get_status(),
        "timestamp": to_iso(utcnow()),
    }


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    # Single worker: the run registry and status sink are in-process state.
    uvicorn.run(app, host="0.0.0.0", port=port, timeout_keep_alive=30)
