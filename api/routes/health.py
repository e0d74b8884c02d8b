"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db, get_runner
from schemas.api import HealthCheckResponse, SyncLogInfo
from models.sync_log import SyncLog
from reconciliation.runner import SyncRunner
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    runner: SyncRunner = Depends(get_runner)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether a sync is running
    - The latest sync log entry
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    last_sync = None
    if db_connected:
        try:
            result = await db.execute(
                select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(1)
            )
            entry = result.scalar_one_or_none()
            if entry is not None:
                last_sync = SyncLogInfo.model_validate(entry)
        except Exception as e:
            logger.error(f"Failed to fetch last sync log: {str(e)}")

    return HealthCheckResponse(
        status="healthy",  # Placeholder, validator will update
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        sync_in_progress=runner.in_progress,
        last_sync=last_sync
    )
