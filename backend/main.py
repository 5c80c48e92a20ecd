import traceback
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from api import (
    policies_router,
    proposals_router,
    scan_router,
    scheduler_router,
    trading_router,
)
from models.database import AsyncSessionLocal, init_database
from services.exchange import close_gateways
from services.trading_errors import TradingError
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting trading agent API...")

    # Default SQLite database lives under <project root>/data
    Path(__file__).resolve().parents[1].joinpath("data").mkdir(parents=True, exist_ok=True)
    try:
        await init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    yield

    logger.info("Shutting down...")
    await close_gateways()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Crypto Trading Agent API",
    description="Scan, propose, approve and execute crypto trades under per-user policies",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(TradingError)
async def trading_error_handler(request: Request, exc: TradingError):
    logger.warning(
        "Request rejected",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        status_code=exc.status_code,
        reasons=exc.reasons,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


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
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(policies_router, prefix="/api", tags=["Policies"])
app.include_router(proposals_router, prefix="/api", tags=["Proposals"])
app.include_router(scan_router, prefix="/api", tags=["Scan"])
app.include_router(trading_router, prefix="/api", tags=["Trading"])
app.include_router(scheduler_router, prefix="/api", tags=["Scheduler"])


@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness check: is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness check: can we reach the database?"""
    checks = {"database": False, "exchange_trade_credentials": bool(settings.EXCHANGE_TRADE_API_KEY)}
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning("Readiness database check failed", error=str(e))

    return {
        "status": "ready" if checks["database"] else "not_ready",
        "checks": checks,
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
