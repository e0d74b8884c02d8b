"""
Dashboard statistics endpoint
"""
from collections import Counter
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import StatsResponse, SyncLogInfo
from models.enum_catalog import EnumCatalogEntry
from models.master_record import MasterRecord
from models.summary_record import SummaryRecord
from models.sync_log import SyncLog
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])

GO_LIVE_TOKENS = ("GO_LIVE", "GOLIVE")
CLOSED_PROPOSAL_TOKENS = ("APPROVED", "CANCEL")


@router.get("/stats", response_model=StatsResponse)
async def get_stats(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Get dashboard statistics.

    Returns:
    - Survey and master totals
    - Pending, go-live and approval figures
    - Profit/loss counts (budget against contract value)
    - The latest sync run
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(f"[{request_id}] GET /stats")

    # ========== Totals ==========

    total_masters_result = await db.execute(
        select(func.count()).select_from(MasterRecord)
    )
    total_masters = total_masters_result.scalar()

    # ========== Per-survey figures ==========

    rows_result = await db.execute(
        select(
            SummaryRecord.job_status,
            SummaryRecord.installation_status,
            SummaryRecord.survey_budget,
            SummaryRecord.contract_value,
            MasterRecord.budget_amount,
            MasterRecord.proposal_status,
        ).outerjoin(MasterRecord, SummaryRecord.case_id == MasterRecord.case_id)
    )
    rows = rows_result.all()

    entries_result = await db.execute(select(EnumCatalogEntry.id, EnumCatalogEntry.value))
    enum_values = dict(entries_result.all())

    pending = 0
    go_live = 0
    approved = 0
    profit = 0
    loss = 0
    by_job_status = Counter()
    by_installation_status = Counter()

    for job_id, installation_id, survey_budget, contract_value, master_budget, proposal_id in rows:
        job_status = enum_values.get(job_id)
        proposal_status = enum_values.get(proposal_id)

        if proposal_status and proposal_status not in CLOSED_PROPOSAL_TOKENS:
            pending += 1
        if proposal_status == "APPROVED":
            approved += 1
        if job_status in GO_LIVE_TOKENS:
            go_live += 1

        by_job_status[job_status or "UNSET"] += 1
        by_installation_status[enum_values.get(installation_id) or "UNSET"] += 1

        budget = survey_budget if survey_budget is not None else master_budget
        if budget is None or contract_value is None:
            continue
        if budget < contract_value:
            profit += 1
        elif budget > contract_value:
            loss += 1

    total_surveys = len(rows)
    approval_rate = round(approved / total_surveys * 100, 2) if total_surveys else 0.0

    # ========== Last sync ==========

    last_sync_result = await db.execute(
        select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(1)
    )
    last_entry = last_sync_result.scalar_one_or_none()

    return StatsResponse(
        total_surveys=total_surveys,
        total_masters=total_masters,
        pending=pending,
        go_live=go_live,
        approval_rate=approval_rate,
        profit_count=profit,
        loss_count=loss,
        by_job_status=dict(by_job_status),
        by_installation_status=dict(by_installation_status),
        last_sync=SyncLogInfo.model_validate(last_entry) if last_entry else None
    )
