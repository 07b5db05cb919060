"""
FastAPI Webhook Server for the Off-ramp Settlement Service
Receives deposit webhooks, serves request intake and status, and runs the
background jobs that drive the pipeline.
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import os
import sys
import time

from config import Config
from database import create_tables, dispose_engine, init_engine
from handlers.offramp_webhook import router as offramp_router
from jobs.offramp_scheduler import OfframpScheduler
from services.offramp_services import build_offramp_services

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('web3').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

_startup_timestamp = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: engine, schema, service wiring, scheduler.
    Shutdown: scheduler first, then the engine.
    """
    global _startup_timestamp
    logger.info(f"🔧 Off-ramp worker {os.getpid()} starting...")

    init_engine()
    await create_tables()
    services = build_offramp_services()
    app.state.offramp = services

    scheduler = None
    if Config.ENABLE_SCHEDULER:
        scheduler = OfframpScheduler(services)
        scheduler.start()
    else:
        logger.warning("🚫 SCHEDULER: Disabled via ENABLE_SCHEDULER=false - webhooks only")

    _startup_timestamp = time.time()
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    yield

    logger.info(f"🔄 Off-ramp worker {os.getpid()} shutting down...")
    if scheduler is not None:
        scheduler.stop()
    await dispose_engine()


app = FastAPI(
    title="Off-ramp Settlement Server",
    description="Token to NGN settlement on Base",
    lifespan=lifespan
)
app.include_router(offramp_router)


@app.get("/health")
async def health_check():
    """Health check endpoint with startup readiness"""
    if _startup_timestamp is None:
        return JSONResponse(
            content={
                "status": "starting",
                "service": "offramp-settlement",
                "ready": False,
            },
            status_code=503  # Service Unavailable during startup
        )

    return {
        "status": "healthy",
        "service": "offramp-settlement",
        "ready": True,
        "uptime_seconds": round(time.time() - _startup_timestamp, 2),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=Config.WEBHOOK_HOST, port=Config.WEBHOOK_PORT)
