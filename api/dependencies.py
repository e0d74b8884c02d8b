"""
FastAPI dependencies: database session, sync runner, row sink, API key
"""

from typing import AsyncGenerator, Optional
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import async_session_maker
from reconciliation.base import RowSink, RowSource
from reconciliation.enum_cache import EnumCache
from reconciliation.runner import SyncRunner
from reconciliation.sources.csv_source import CSVSource
from reconciliation.sources.sheets_source import GoogleSheetsSource
import logging

logger = logging.getLogger(__name__)

_runner: Optional[SyncRunner] = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def build_row_source() -> Optional[RowSource]:
    """Google Sheets when a spreadsheet is configured, else CSV exports, else none"""
    if settings.GOOGLE_SPREADSHEET_ID:
        return GoogleSheetsSource()
    if settings.CSV_MASTER_PATH and settings.CSV_SUMMARY_PATH:
        return CSVSource(settings.CSV_MASTER_PATH, settings.CSV_SUMMARY_PATH)
    logger.warning("No row source configured; syncs need rows in the request body")
    return None


def get_runner() -> SyncRunner:
    """Process-wide runner; its lock makes syncs single-flight"""
    global _runner
    if _runner is None:
        _runner = SyncRunner(async_session_maker, source=build_row_source())
    return _runner


def get_enum_cache(runner: SyncRunner = Depends(get_runner)) -> EnumCache:
    return runner.enum_cache


def get_row_sink(runner: SyncRunner = Depends(get_runner)) -> Optional[RowSink]:
    source = runner.source
    return source if isinstance(source, RowSink) else None


async def verify_api_key(x_api_key: Optional[str] = Header(None)):
    """Require X-API-Key when API_KEY is configured"""
    if settings.API_KEY and x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
