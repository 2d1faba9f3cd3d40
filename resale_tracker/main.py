"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from resale_tracker.api.routes import (
    batches,
    books,
    cron,
    notifications,
    price_alerts,
    user_settings,
)
from resale_tracker.config import settings
from resale_tracker.db.models import Base
from resale_tracker.db.session import engine
from resale_tracker.logging_config import setup_logging
from resale_tracker.worker.job_recovery import recover_interrupted_jobs
from resale_tracker.worker.scheduler import setup_scheduler
from resale_tracker.worker.tasks import task_runner

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    # Startup
    logger.info("Starting Resale Tracker...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.recover_jobs_on_startup:
        await recover_interrupted_jobs()

    # Initialize task runner
    await task_runner.initialize()

    # Start scheduler
    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()

    await task_runner.close()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Resale Tracker",
    description="Track used-book resale prices and alert on price conditions",
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

# Include API routes
app.include_router(batches.router)
app.include_router(books.router)
app.include_router(price_alerts.router)
app.include_router(notifications.router)
app.include_router(user_settings.router)
app.include_router(cron.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


def run():
    """Run the API server with uvicorn."""
    uvicorn.run(
        "resale_tracker.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
