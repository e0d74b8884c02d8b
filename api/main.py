"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, surveys, stats, sync
from api.dependencies import get_runner
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from reconciliation.scheduler import SyncScheduler
from services.survey_service import wait_for_pushes

# Configure logging
setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Survey Sync Backend API",
    description="Survey records with spreadsheet reconciliation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

scheduler = None


# Include routers
app.include_router(health.router)
app.include_router(sync.router)
app.include_router(surveys.router)
app.include_router(stats.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    global scheduler
    logger.info("Starting Survey Sync Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SYNC_SCHEDULER_ENABLED:
        scheduler = SyncScheduler(get_runner())
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Survey Sync Backend API")
    if scheduler is not None:
        scheduler.stop()
    await wait_for_pushes()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Survey Sync Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "sync": "/sync",
            "surveys": "/surveys",
            "stats": "/stats"
        }
    }
