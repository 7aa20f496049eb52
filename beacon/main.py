"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException
from prometheus_fastapi_instrumentator import Instrumentator

from beacon.config import settings
from beacon.db.models import Base
from beacon.db.session import engine
from beacon.worker.scheduler import setup_scheduler
from beacon.worker.tasks import task_runner

# Configure structured logging
from beacon.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    logger.info("Starting availability poller...")

    # Development bootstrap; production schemas are migrated elsewhere
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await task_runner.initialize()

    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    yield

    logger.info("Shutting down...")
    if scheduler:
        scheduler.shutdown()
    await task_runner.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Beacon Availability Poller",
    description="Retailer availability detection and URL candidate polling",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/retailers")
async def retailer_health():
    """Per-retailer health, circuit state and request metrics."""
    if task_runner.integrations is None:
        raise HTTPException(status_code=503, detail="Retailer integrations not initialized")
    statuses = await task_runner.integrations.health()
    return {
        "retailers": task_runner.integrations.list_retailers(),
        "health": [
            {
                "retailer_id": s.retailer_id,
                "is_healthy": s.is_healthy,
                "response_time_ms": round(s.response_time, 1),
                "success_rate": round(s.success_rate, 1),
                "last_checked": s.last_checked.isoformat(),
                "errors": s.errors,
                "circuit_breaker_state": s.circuit_breaker_state,
            }
            for s in statuses
        ],
        "metrics": task_runner.integrations.metrics(),
    }


if __name__ == "__main__":
    uvicorn.run(
        "beacon.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
