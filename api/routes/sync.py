"""
Sync endpoints: trigger a reconciliation, inspect runs, validate rows
"""

import asyncio
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_runner, verify_api_key
from schemas.api import (
    EnumSyncResponse,
    SyncLogInfo,
    SyncRequest,
    SyncResponse,
    SyncStatusResponse,
    ValidationReportResponse,
)
from models.base import SyncMode
from models.sync_log import SyncLog
from reconciliation.runner import SyncRunner, describe_result
from reconciliation.validation import check_integrity, validate_sync_data
from core.config import settings
from core.exceptions import ExtractionError, SyncException, SyncInProgressError
from core.sanitizer import sanitize_error
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"], dependencies=[Depends(verify_api_key)])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


def _error_status(error: SyncException) -> int:
    if isinstance(error, SyncInProgressError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ExtractionError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _run_in_background(runner: SyncRunner, request_id: str, **kwargs):
    try:
        result = await runner.run(**kwargs)
        logger.info(f"[{request_id}] Background sync finished: {describe_result(result)}")
    except SyncInProgressError:
        logger.warning(f"[{request_id}] Background sync skipped, another sync is running")
    except Exception as e:
        # Outcome is recorded in the sync log
        logger.error(f"[{request_id}] Background sync failed: {str(e)}")


@router.post("", response_model=SyncResponse)
async def trigger_sync(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    mode: SyncMode = Query(SyncMode.INCREMENTAL, description="full, incremental or batched"),
    batch_number: int = Query(1, ge=1, description="Batch to start from (batched mode)"),
    batch_size: Optional[int] = Query(None, ge=1, le=1000, description="Rows per transaction"),
    background: bool = Query(False, description="Return 202 and run detached"),
    body: Optional[SyncRequest] = None,
    runner: SyncRunner = Depends(get_runner)
):
    """
    Reconcile the sheet into the database.

    - Foreground: races the run against SYNC_REQUEST_TIMEOUT_SECONDS (408 on expiry)
    - Background: returns 202 immediately; the outcome goes to the sync log
    - 409 while another sync is running
    """
    request_id = _request_id(request)
    logger.info(
        f"[{request_id}] POST /sync - mode={mode.value}, batch_number={batch_number}, "
        f"batch_size={batch_size}, background={background}"
    )

    if runner.in_progress:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A sync is already in progress")

    kwargs = {"mode": mode, "batch_number": batch_number, "batch_size": batch_size}
    if body is not None:
        kwargs.update(
            master_rows=body.master_rows,
            summary_rows=body.summary_rows,
            delete_orphans=body.delete_orphans,
            enable_name_matching=body.enable_name_matching
        )

    if background:
        background_tasks.add_task(_run_in_background, runner, request_id, **kwargs)
        response.status_code = status.HTTP_202_ACCEPTED
        return SyncResponse(status="ACCEPTED", message="Sync started in background", mode=mode)

    try:
        result = await asyncio.wait_for(
            runner.run(**kwargs),
            timeout=settings.SYNC_REQUEST_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.warning(f"[{request_id}] Sync exceeded {settings.SYNC_REQUEST_TIMEOUT_SECONDS}s")
        raise HTTPException(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            detail="Sync request timed out, use batched mode or background=true"
        )
    except SyncException as e:
        raise HTTPException(
            status_code=_error_status(e),
            detail=sanitize_error(e, "Sync failed")
        )

    return SyncResponse(
        status="SUCCESS" if result.completed and result.errors == 0 else "PARTIAL",
        message=describe_result(result),
        mode=mode,
        result=result
    )


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db),
    runner: SyncRunner = Depends(get_runner)
):
    """Recent sync log entries, newest first"""
    logger.info(f"[{_request_id(request)}] GET /sync/status")

    result = await db.execute(
        select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
    )
    return SyncStatusResponse(
        sync_in_progress=runner.in_progress,
        recent=[SyncLogInfo.model_validate(entry) for entry in result.scalars().all()]
    )


@router.post("/validate", response_model=ValidationReportResponse)
async def validate_sync(
    request: Request,
    body: Optional[SyncRequest] = None,
    db: AsyncSession = Depends(get_db),
    runner: SyncRunner = Depends(get_runner)
):
    """Check the sheet rows (or posted rows) without writing anything"""
    logger.info(f"[{_request_id(request)}] POST /sync/validate")

    try:
        if body is not None and (body.master_rows is not None or body.summary_rows is not None):
            rows = await runner.read_rows(body.master_rows, body.summary_rows)
        else:
            rows = await runner.read_rows()
    except SyncException as e:
        raise HTTPException(status_code=_error_status(e), detail=sanitize_error(e, "Failed to read rows"))

    enable_name_matching = body.enable_name_matching if body is not None else True
    report = validate_sync_data(rows["master_rows"], rows["summary_rows"], enable_name_matching)
    orphans = await check_integrity(db)

    return ValidationReportResponse(
        valid=report.valid and not orphans,
        master_count=report.master_count,
        summary_count=report.summary_count,
        duplicate_master_ids=report.duplicate_master_ids,
        summaries_without_master=report.summaries_without_master,
        invalid_summary_rows=report.invalid_summary_rows,
        orphaned_summary_records=orphans,
        report=report.render()
    )


@router.post("/enums", response_model=EnumSyncResponse)
async def sync_enums(
    request: Request,
    runner: SyncRunner = Depends(get_runner)
):
    """Create, reactivate and deactivate catalog entries to match the sheet"""
    logger.info(f"[{_request_id(request)}] POST /sync/enums")

    try:
        stats = await runner.sync_enums()
    except SyncException as e:
        raise HTTPException(status_code=_error_status(e), detail=sanitize_error(e, "Enum sync failed"))
    return EnumSyncResponse(**stats)
