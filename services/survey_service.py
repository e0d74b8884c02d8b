"""
Direct record edits on summary surveys.

This module provides:
- Dashboard read path (single record, filtered page)
- Create / update / delete of summary records
- Status mirroring onto the linked master record in the same transaction
- A non-blocking push of every successful write to the sheet
"""

import asyncio
from decimal import Decimal
from typing import Any, Callable, Awaitable, Dict, Iterable, List, Optional, Set, Tuple
from sqlalchemy import select, func, or_, extract
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession
from models.base import EnumCategory, SyncStatus
from models.enum_catalog import EnumCatalogEntry
from models.master_record import MasterRecord
from models.summary_record import SummaryRecord
from schemas.api import SurveyCreateRequest, SurveyQueryParams, SurveyResponse, SurveyUpdateRequest
from reconciliation.base import MatchKey, RowSink, SheetRole
from reconciliation.enum_cache import EnumCache, canonical_token
from reconciliation.normalizer import SUMMARY_COLUMNS, SUMMARY_WIDTH
from core.exceptions import ConflictError, RecordNotFoundError
import logging

logger = logging.getLogger(__name__)

# Enum fields stored on the summary record
SUMMARY_ENUM_EDITS = {
    "job_status": EnumCategory.JOB_STATUS,
    "installation_status": EnumCategory.INSTALLATION_STATUS,
}

# Enum fields that live on the master; edits are mirrored there
MASTER_ENUM_EDITS = {
    "thematic_plan": EnumCategory.THEMATIC_PLAN,
    "proposal_status": EnumCategory.PROPOSAL_STATUS,
}

# Display copies kept on the summary for master enums
LABEL_COPIES = {
    "thematic_plan": "thematic_plan_label",
    "proposal_status": "proposal_status_label",
}

# Keeps background pushes referenced until they finish
_pending_pushes: Set[asyncio.Task] = set()


def format_cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral() else str(value)
    return value


def summary_to_sheet_row(summary: SummaryRecord, labels: Dict[str, Optional[str]]) -> List[Any]:
    """
    Summary record as an A:W sheet row.

    Enum columns take their display labels; the cost ratio is written as a
    whole percentage ("45%").
    """
    row: List[Any] = [None] * SUMMARY_WIDTH
    plain = (
        "sequence_no", "service_area", "exchange_code", "customer_name",
        "latitude", "longitude", "installation_address", "service_type",
        "contract_value", "design_ref", "budget_amount", "survey_budget",
        "memo_number", "installation_progress", "odp_name", "distance_to_odp",
        "remark",
    )
    for field in plain:
        row[SUMMARY_COLUMNS[field]] = format_cell(getattr(summary, field))

    row[SUMMARY_COLUMNS["raw_identity"]] = summary.case_id
    if summary.cost_ratio is not None:
        row[SUMMARY_COLUMNS["cost_ratio"]] = f"{summary.cost_ratio * 100:.0f}%"

    row[SUMMARY_COLUMNS["job_status"]] = labels.get("job_status")
    row[SUMMARY_COLUMNS["installation_status"]] = labels.get("installation_status")
    row[SUMMARY_COLUMNS["thematic_plan"]] = summary.thematic_plan_label or labels.get("thematic_plan")
    row[SUMMARY_COLUMNS["proposal_status"]] = summary.proposal_status_label or labels.get("proposal_status")
    return row


class SurveyService:
    """
    Summary survey reads and edits.

    The request session is used for the record transaction; enum values in
    an edit are resolved through the enum cache (its own sessions) before
    that transaction touches any row.
    """

    def __init__(
        self,
        db: AsyncSession,
        enum_cache: EnumCache,
        sink: Optional[RowSink] = None
    ):
        self.db = db
        self.enum_cache = enum_cache
        self.sink = sink

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_summary(self, case_id: str) -> SummaryRecord:
        result = await self.db.execute(
            select(SummaryRecord).where(SummaryRecord.case_id == case_id)
        )
        summary = result.scalar_one_or_none()
        if summary is None:
            raise RecordNotFoundError(
                f"Survey {case_id} not found",
                context={"case_id": case_id}
            )
        return summary

    async def list_summaries(self, params: SurveyQueryParams) -> Tuple[List[SummaryRecord], int]:
        """Filtered page of summaries ordered by sequence no"""
        query = select(SummaryRecord)

        if params.search:
            pattern = f"%{params.search.strip()}%"
            query = query.where(or_(
                SummaryRecord.case_id.ilike(pattern),
                SummaryRecord.customer_name.ilike(pattern),
                SummaryRecord.sequence_no.ilike(pattern),
            ))

        if params.job_status:
            token = canonical_token(EnumCategory.JOB_STATUS, params.job_status)
            job_entry = aliased(EnumCatalogEntry)
            query = query.join(job_entry, SummaryRecord.job_status == job_entry.id).where(
                job_entry.value == token
            )

        if params.service_area:
            query = query.where(SummaryRecord.service_area == params.service_area)
        if params.exchange_code:
            query = query.where(SummaryRecord.exchange_code == params.exchange_code)
        if params.budget_min is not None:
            query = query.where(SummaryRecord.budget_amount >= params.budget_min)
        if params.budget_max is not None:
            query = query.where(SummaryRecord.budget_amount <= params.budget_max)
        if params.year is not None:
            query = query.join(MasterRecord, SummaryRecord.case_id == MasterRecord.case_id).where(
                extract("year", MasterRecord.input_date) == params.year
            )

        count_result = await self.db.execute(
            select(func.count()).select_from(query.subquery())
        )
        total = count_result.scalar()

        offset = (params.page - 1) * params.page_size
        result = await self.db.execute(
            query.order_by(SummaryRecord.sequence_no).offset(offset).limit(params.page_size)
        )
        return list(result.scalars().all()), total

    async def _enum_values(self, ids: Iterable[Optional[int]]) -> Dict[int, EnumCatalogEntry]:
        wanted = {i for i in ids if i is not None}
        if not wanted:
            return {}
        result = await self.db.execute(
            select(EnumCatalogEntry).where(EnumCatalogEntry.id.in_(wanted))
        )
        return {entry.id: entry for entry in result.scalars().all()}

    async def _masters(self, case_ids: Iterable[str]) -> Dict[str, MasterRecord]:
        result = await self.db.execute(
            select(MasterRecord).where(MasterRecord.case_id.in_(set(case_ids)))
        )
        return {master.case_id: master for master in result.scalars().all()}

    async def to_responses(self, summaries: List[SummaryRecord]) -> List[SurveyResponse]:
        """Expand enum ids to their canonical values"""
        masters = await self._masters(s.case_id for s in summaries)
        ids = []
        for summary in summaries:
            ids.extend([summary.job_status, summary.installation_status])
            master = masters.get(summary.case_id)
            if master is not None:
                ids.extend([master.thematic_plan, master.proposal_status])
        entries = await self._enum_values(ids)

        def value_of(enum_id):
            entry = entries.get(enum_id)
            return entry.value if entry else None

        responses = []
        for summary in summaries:
            master = masters.get(summary.case_id)
            data = {
                column.name: getattr(summary, column.name)
                for column in SummaryRecord.__table__.columns
            }
            data["job_status"] = value_of(summary.job_status)
            data["installation_status"] = value_of(summary.installation_status)
            data["thematic_plan"] = value_of(master.thematic_plan) if master else None
            data["proposal_status"] = value_of(master.proposal_status) if master else None
            responses.append(SurveyResponse(**data))
        return responses

    # ========================================================================
    # Writes
    # ========================================================================

    async def _resolve_enum_edits(self, fields: Dict[str, Any]) -> Dict[str, Optional[int]]:
        """Catalog ids for every enum field present in an edit"""
        resolved = {}
        for field, category in {**SUMMARY_ENUM_EDITS, **MASTER_ENUM_EDITS}.items():
            if field in fields:
                resolved[field] = await self.enum_cache.resolve(category, fields[field])
        return resolved

    @staticmethod
    def _plain_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        skip = set(SUMMARY_ENUM_EDITS) | set(MASTER_ENUM_EDITS) | {"case_id", "sequence_no"}
        return {k: v for k, v in fields.items() if k not in skip}

    def _apply_enum_edits(
        self,
        summary: SummaryRecord,
        master: MasterRecord,
        fields: Dict[str, Any],
        resolved: Dict[str, Optional[int]]
    ):
        for field in SUMMARY_ENUM_EDITS:
            if field in resolved:
                setattr(summary, field, resolved[field])

        # Mirror onto the master so both tables agree
        if "installation_status" in resolved:
            master.installation_status = resolved["installation_status"]
        for field, label_field in LABEL_COPIES.items():
            if field in resolved:
                setattr(master, field, resolved[field])
                setattr(summary, label_field, fields[field])

    async def _get_master(self, case_id: str) -> MasterRecord:
        result = await self.db.execute(
            select(MasterRecord).where(MasterRecord.case_id == case_id)
        )
        master = result.scalar_one_or_none()
        if master is None:
            raise RecordNotFoundError(
                f"Master record {case_id} not found, sync the detail sheet first",
                context={"case_id": case_id}
            )
        return master

    async def update_summary(self, case_id: str, changes: SurveyUpdateRequest) -> SummaryRecord:
        """
        Update a summary and mirror status fields onto its master.

        Raises:
            RecordNotFoundError: Unknown survey, or a new case_id without a master
            ConflictError: The new case_id already has a survey
        """
        fields = changes.model_dump(exclude_unset=True)
        resolved = await self._resolve_enum_edits(fields)

        try:
            summary = await self.get_summary(case_id)
            original_sequence = summary.sequence_no

            target_case_id = fields.get("case_id") or summary.case_id
            if target_case_id != summary.case_id:
                taken = await self.db.execute(
                    select(SummaryRecord.id).where(SummaryRecord.case_id == target_case_id)
                )
                if taken.scalar_one_or_none() is not None:
                    raise ConflictError(
                        f"Survey for case {target_case_id} already exists",
                        context={"case_id": target_case_id}
                    )
            master = await self._get_master(target_case_id)
            summary.case_id = target_case_id

            for field, value in self._plain_fields(fields).items():
                setattr(summary, field, value)
            self._apply_enum_edits(summary, master, fields, resolved)
            summary.sync_status = SyncStatus.PENDING

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Updated survey {case_id} (no: {original_sequence})")
        await self._push_summary("update", summary, MatchKey(
            primary=original_sequence,
            case_id=case_id,
            customer_name=summary.customer_name
        ))
        return summary

    async def create_summary(self, data: SurveyCreateRequest) -> SummaryRecord:
        """
        Raises:
            ConflictError: Duplicate case id or sequence no
            RecordNotFoundError: No master for the case id
        """
        fields = data.model_dump(exclude_unset=True)
        fields["case_id"] = data.case_id
        fields["sequence_no"] = data.sequence_no
        resolved = await self._resolve_enum_edits(fields)

        try:
            existing = await self.db.execute(
                select(SummaryRecord).where(or_(
                    SummaryRecord.case_id == data.case_id,
                    SummaryRecord.sequence_no == data.sequence_no
                ))
            )
            duplicate = existing.scalars().first()
            if duplicate is not None:
                key = "case" if duplicate.case_id == data.case_id else "no"
                value = data.case_id if key == "case" else data.sequence_no
                raise ConflictError(
                    f"Survey with {key} {value} already exists",
                    context={"case_id": data.case_id, "sequence_no": data.sequence_no}
                )

            master = await self._get_master(data.case_id)

            summary = SummaryRecord(
                sequence_no=data.sequence_no,
                case_id=data.case_id,
                sync_status=SyncStatus.PENDING,
                **self._plain_fields(fields)
            )
            self._apply_enum_edits(summary, master, fields, resolved)
            self.db.add(summary)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Created survey {data.case_id} (no: {data.sequence_no})")
        await self._push_summary("create", summary, None)
        return summary

    async def delete_summary(self, case_id: str) -> None:
        try:
            summary = await self.get_summary(case_id)
            match_key = MatchKey(
                primary=summary.sequence_no,
                case_id=summary.case_id,
                customer_name=summary.customer_name
            )
            await self.db.delete(summary)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Deleted survey {case_id} (no: {match_key.primary})")
        self.schedule_push(
            lambda: self.sink.delete_row(SheetRole.SUMMARY, match_key),
            f"deleted survey {case_id}"
        )

    # ========================================================================
    # Sheet push
    # ========================================================================

    async def _push_summary(self, action: str, summary: SummaryRecord, match_key: Optional[MatchKey]):
        if self.sink is None:
            return
        master_result = await self.db.execute(
            select(MasterRecord).where(MasterRecord.case_id == summary.case_id)
        )
        master = master_result.scalar_one_or_none()
        entries = await self._enum_values([
            summary.job_status,
            summary.installation_status,
            master.thematic_plan if master else None,
            master.proposal_status if master else None,
        ])

        def label_of(enum_id):
            entry = entries.get(enum_id)
            return entry.display_label if entry else None

        labels = {
            "job_status": label_of(summary.job_status),
            "installation_status": label_of(summary.installation_status),
            "thematic_plan": label_of(master.thematic_plan) if master else None,
            "proposal_status": label_of(master.proposal_status) if master else None,
        }
        row = summary_to_sheet_row(summary, labels)

        if action == "create":
            self.schedule_push(
                lambda: self.sink.append_row(SheetRole.SUMMARY, row),
                f"new survey {summary.case_id}"
            )
        else:
            self.schedule_push(
                lambda: self.sink.update_row(SheetRole.SUMMARY, match_key, row),
                f"survey {summary.case_id}"
            )

    def schedule_push(
        self,
        operation: Callable[[], Awaitable[bool]],
        description: str
    ) -> Optional[asyncio.Task]:
        """Run a sheet write in the background; failures are logged only"""
        if self.sink is None:
            return None
        task = asyncio.create_task(_run_push(operation, description))
        _pending_pushes.add(task)
        task.add_done_callback(_pending_pushes.discard)
        return task


async def _run_push(operation: Callable[[], Awaitable[bool]], description: str):
    try:
        await operation()
    except Exception as e:
        logger.error(
            f"Non-blocking sync to sheets failed for {description}: {str(e)}",
            extra={"error_context": {"description": description, "error_type": type(e).__name__}}
        )


async def wait_for_pushes():
    """Wait for background sheet pushes (shutdown, tests)"""
    if _pending_pushes:
        await asyncio.gather(*list(_pending_pushes), return_exceptions=True)
