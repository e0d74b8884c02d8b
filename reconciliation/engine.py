"""
Reconciliation Engine - brings the two record tables in line with a sheet snapshot.

Phases, in order:
1. Pre-resolve every enum value the run needs (no transaction open)
2. Pre-delete summaries whose case no longer resolves from the sheet
3. Upsert masters from the detail rows
4. Upsert summaries, creating a missing master first
5. Full mode only: delete masters/summaries absent from the snapshot
6. Fill missing master input dates from dated detail rows of the same customer

The modes differ only in parameters (which deletes run, where processing
starts, how long it may take); there is one code path.
"""

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Set, Tuple
from pydantic import BaseModel, Field
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from models.base import EnumCategory, SyncMode, SyncStatus
from models.master_record import MasterRecord
from models.summary_record import SummaryRecord
from schemas.rows import MasterRow, SummaryRow
from reconciliation.enum_cache import EnumCache
from reconciliation.identity import IdentityResolver, IdentitySnapshot
from reconciliation.executor import (
    BatchExecutor,
    Deadline,
    ExecutorState,
    Operation,
    Outcome,
    SyncResult,
)
from core.config import settings
from core.exceptions import DatabaseError
import logging

logger = logging.getLogger(__name__)

MASTER_ENUM_FIELDS = {
    "constraint_category": EnumCategory.CONSTRAINT_CATEGORY,
    "thematic_plan": EnumCategory.THEMATIC_PLAN,
    "proposal_status": EnumCategory.PROPOSAL_STATUS,
    "installation_status": EnumCategory.INSTALLATION_STATUS,
    "remark_category": EnumCategory.REMARK_CATEGORY,
}

SUMMARY_ENUM_FIELDS = {
    "job_status": EnumCategory.JOB_STATUS,
    "installation_status": EnumCategory.INSTALLATION_STATUS,
}

# Summary row fields that also describe the master, used when the
# summary row has to create its master
SUMMARY_TO_MASTER_FIELDS = (
    "customer_name",
    "latitude",
    "longitude",
    "service_area",
    "exchange_code",
    "budget_amount",
)

MASTER_ROW_FIELDS = (
    "alternate_service_code",
    "age_days",
    "month_label",
    "input_date",
    "order_type",
    "service_area",
    "exchange_code",
    "customer_name",
    "latitude",
    "longitude",
    "budget_amount",
    "design_value",
    "design_status",
    "proposal_ref",
)

SUMMARY_ROW_FIELDS = (
    "cost_ratio",
    "service_area",
    "exchange_code",
    "customer_name",
    "latitude",
    "longitude",
    "installation_address",
    "service_type",
    "contract_value",
    "design_ref",
    "budget_amount",
    "survey_budget",
    "memo_number",
    "installation_progress",
    "odp_name",
    "distance_to_odp",
    "remark",
    "thematic_plan_label",
    "proposal_status_label",
)


class SyncOptions(BaseModel):
    """Run parameters; the mode only switches deletes and the start position"""
    mode: SyncMode = SyncMode.INCREMENTAL
    batch_size: int = Field(default_factory=lambda: settings.SYNC_BATCH_SIZE, ge=1)
    deadline_seconds: Optional[float] = Field(default_factory=lambda: settings.SYNC_DEADLINE_SECONDS)
    batch_max_wait_seconds: Optional[float] = Field(
        default_factory=lambda: settings.SYNC_BATCH_MAX_WAIT_SECONDS
    )
    batch_number: int = Field(default=1, ge=1)
    max_batches: Optional[int] = Field(default=None, ge=1)
    delete_orphans: bool = True
    use_prefetched_snapshot: bool = True
    enable_name_matching: bool = True

    @property
    def runs_pre_delete(self) -> bool:
        if not self.delete_orphans:
            return False
        if self.mode == SyncMode.BATCHED:
            return self.batch_number == 1
        return True

    @property
    def start_chunk(self) -> int:
        return self.batch_number - 1 if self.mode == SyncMode.BATCHED else 0


def values_differ(current: Any, new: Any) -> bool:
    """
    Change detection for one field.

    Decimals compare by numeric value, so 5000000 and 5000000.00 are equal.
    """
    if current is None and new is None:
        return False
    if current is None or new is None:
        return True
    if isinstance(current, (Decimal, int, float)) and isinstance(new, (Decimal, int, float)):
        if isinstance(current, bool) or isinstance(new, bool):
            return current != new
        return Decimal(str(current)) != Decimal(str(new))
    return current != new


def fit_to_columns(model: Any, values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Round Decimal values to the scale of their Numeric column.

    Stored values carry the column scale; new values are compared at
    the same scale.
    """
    columns = model.__table__.columns
    fitted = {}
    for field, value in values.items():
        scale = getattr(columns[field].type, "scale", None) if field in columns else None
        if isinstance(value, Decimal) and scale is not None:
            value = value.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)
        fitted[field] = value
    return fitted


def apply_changes(record: Any, values: Dict[str, Any]) -> bool:
    """Assign only the differing fields; returns True if anything changed"""
    changed = False
    for field, value in values.items():
        if values_differ(getattr(record, field), value):
            setattr(record, field, value)
            changed = True
    return changed


class ReconciliationEngine:
    """
    Compute and apply creates, updates and deletes for one snapshot.

    The session factory is injected; the engine keeps no global state.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        enum_cache: Optional[EnumCache] = None
    ):
        self.session_maker = session_maker
        self.enum_cache = enum_cache or EnumCache(session_maker)

    async def reconcile(
        self,
        master_rows: List[MasterRow],
        summary_rows: List[SummaryRow],
        options: Optional[SyncOptions] = None,
        normalization_skipped: int = 0
    ) -> SyncResult:
        """
        Reconcile normalized rows against the persisted tables.

        Args:
            master_rows: Normalized detail rows
            summary_rows: Normalized summary rows
            options: Mode, batch and deadline parameters
            normalization_skipped: Rows dropped by the normalizer, reported
                as skipped on the first batch of a run

        Returns:
            SyncResult with counters; completed=False when the deadline or
            max_batches stopped the run early
        """
        options = options or SyncOptions()
        deadline = Deadline(options.deadline_seconds)
        result = SyncResult(state=ExecutorState.STARTED)
        if options.start_chunk == 0:
            result.skipped += normalization_skipped

        logger.info(
            f"Reconciliation started: mode={options.mode.value}, "
            f"batch={options.batch_number}, batch_size={options.batch_size}, "
            f"{len(master_rows)} detail rows, {len(summary_rows)} summary rows"
        )

        # ---- Snapshot and identity planning (reads only) ----
        try:
            async with self.session_maker() as session:
                snapshot = await IdentitySnapshot.load(session)
                existing_summary_ids = await self._existing_summary_case_ids(session)
        except Exception as e:
            raise DatabaseError(
                "Failed to load the persisted snapshot",
                context={"operation": "SELECT", "table_name": "master_records"},
                original_exception=e
            )

        snapshot.absorb_master_rows(master_rows)
        resolver = IdentityResolver(snapshot, enable_name_matching=options.enable_name_matching)

        operations = self._plan(
            master_rows, summary_rows, resolver, result, count_skips=options.start_chunk == 0
        )
        result.total_records = len(operations)

        executor = BatchExecutor(
            self.session_maker,
            batch_size=options.batch_size,
            deadline=deadline,
            batch_max_wait_seconds=options.batch_max_wait_seconds
        )
        start_offset = min(options.start_chunk * options.batch_size, len(operations))
        pending = operations[start_offset:]
        # Operations before the window were completed by earlier invocations
        result.processed_records = start_offset

        # ---- Phase 1: enums ----
        result.state = ExecutorState.RESOLVING_ENUMS
        await self.enum_cache.resolve_many(self._enum_pairs(pending))

        # ---- Phase 2: pre-delete orphaned summaries ----
        if options.runs_pre_delete and not summary_rows:
            logger.warning("Empty summary snapshot, skipping orphan deletes")
        elif options.runs_pre_delete:
            orphaned = existing_summary_ids - resolver.dry_run(summary_rows)
            if orphaned:
                result.state = ExecutorState.DELETING
                result.deleted += await self._delete_summaries(orphaned)

        # ---- Phases 3 and 4: upserts ----
        sync_time = datetime.utcnow()

        async def prepare(session: AsyncSession, chunk: List[Operation]) -> Dict[str, Any]:
            return await self._prepare_chunk(session, chunk, options.use_prefetched_snapshot)

        async def apply(session: AsyncSession, op: Operation, context: Dict[str, Any]) -> Outcome:
            if op.kind == "master":
                return await self._apply_master(session, op, context, sync_time)
            return await self._apply_summary(session, op, context, sync_time)

        finished = await executor.execute(
            operations,
            apply,
            result,
            prepare=prepare,
            start_chunk=options.start_chunk,
            max_chunks=options.max_batches
        )

        # ---- Phase 5: full-mode deletes ----
        if finished and options.mode == SyncMode.FULL and options.delete_orphans:
            keep = {row.case_id for row in master_rows} | resolver.resolved
            if keep:
                result.state = ExecutorState.DELETING
                result.deleted += await self._delete_absent(keep)
            else:
                logger.warning("Empty snapshot in full mode, skipping deletes")

        # ---- Phase 6: input dates by customer name ----
        if finished:
            result.dates_fixed = await self._fix_missing_input_dates(master_rows, sync_time)

        result.completed = finished
        result.state = ExecutorState.COMPLETED if finished else ExecutorState.TRUNCATED_BY_TIMEOUT
        result.duration_seconds = round(deadline.elapsed, 3)

        logger.info(
            f"Reconciliation {result.state}: created={result.created}, "
            f"updated={result.updated}, deleted={result.deleted}, "
            f"skipped={result.skipped}, errors={result.errors}, "
            f"processed={result.processed_records}/{result.total_records}"
        )
        return result

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan(
        self,
        master_rows: List[MasterRow],
        summary_rows: List[SummaryRow],
        resolver: IdentityResolver,
        result: SyncResult,
        count_skips: bool = True
    ) -> List[Operation]:
        """Ordered operation list: every master op precedes every summary op"""
        operations = [
            Operation(kind="master", key=row.case_id, payload=row)
            for row in master_rows
        ]

        for row in summary_rows:
            if not row.sequence_no or not row.raw_identity:
                if count_skips:
                    result.skipped += 1
                continue
            case_id, must_create = resolver.resolve(row)
            operations.append(Operation(
                kind="summary",
                key=case_id,
                payload=row,
                must_create=must_create
            ))

        return operations

    @staticmethod
    def _enum_pairs(operations: List[Operation]) -> List[Tuple[EnumCategory, Any]]:
        pairs = []
        for op in operations:
            row = op.payload
            if op.kind == "master":
                for field, category in MASTER_ENUM_FIELDS.items():
                    pairs.append((category, getattr(row, field)))
            else:
                for field, category in SUMMARY_ENUM_FIELDS.items():
                    pairs.append((category, getattr(row, field)))
                # Mirrored onto a master created from this row
                pairs.append((EnumCategory.THEMATIC_PLAN, row.thematic_plan))
                pairs.append((EnumCategory.PROPOSAL_STATUS, row.proposal_status))
        return pairs

    # ------------------------------------------------------------------
    # Chunk execution
    # ------------------------------------------------------------------

    async def _prepare_chunk(
        self,
        session: AsyncSession,
        chunk: List[Operation],
        prefetch: bool
    ) -> Dict[str, Any]:
        """Load the records a chunk touches with one query per table"""
        context: Dict[str, Any] = {"masters": {}, "summaries": {}, "prefetched": prefetch}
        if not prefetch:
            return context

        case_ids = {op.key for op in chunk}
        masters = await session.execute(
            select(MasterRecord).where(MasterRecord.case_id.in_(case_ids))
        )
        context["masters"] = {m.case_id: m for m in masters.scalars().all()}

        summary_ids = {op.key for op in chunk if op.kind == "summary"}
        if summary_ids:
            summaries = await session.execute(
                select(SummaryRecord).where(SummaryRecord.case_id.in_(summary_ids))
            )
            context["summaries"] = {s.case_id: s for s in summaries.scalars().all()}
        return context

    async def _get_master(
        self,
        session: AsyncSession,
        case_id: str,
        context: Dict[str, Any]
    ) -> Optional[MasterRecord]:
        if case_id in context["masters"]:
            return context["masters"][case_id]
        if context["prefetched"]:
            return None
        result = await session.execute(
            select(MasterRecord).where(MasterRecord.case_id == case_id)
        )
        return result.scalar_one_or_none()

    async def _get_summary(
        self,
        session: AsyncSession,
        case_id: str,
        context: Dict[str, Any]
    ) -> Optional[SummaryRecord]:
        if case_id in context["summaries"]:
            return context["summaries"][case_id]
        if context["prefetched"]:
            return None
        result = await session.execute(
            select(SummaryRecord).where(SummaryRecord.case_id == case_id)
        )
        return result.scalar_one_or_none()

    def _master_values(self, row: MasterRow) -> Dict[str, Any]:
        values = {field: getattr(row, field) for field in MASTER_ROW_FIELDS}
        for field, category in MASTER_ENUM_FIELDS.items():
            values[field] = self.enum_cache.get(category, getattr(row, field))
        return fit_to_columns(MasterRecord, values)

    def _summary_values(self, row: SummaryRow) -> Dict[str, Any]:
        values = {field: getattr(row, field) for field in SUMMARY_ROW_FIELDS}
        for field, category in SUMMARY_ENUM_FIELDS.items():
            values[field] = self.enum_cache.get(category, getattr(row, field))
        return fit_to_columns(SummaryRecord, values)

    async def _apply_master(
        self,
        session: AsyncSession,
        op: Operation,
        context: Dict[str, Any],
        sync_time: datetime
    ) -> Outcome:
        row: MasterRow = op.payload
        values = self._master_values(row)

        master = await self._get_master(session, row.case_id, context)
        if master is None:
            master = MasterRecord(
                case_id=row.case_id,
                sync_status=SyncStatus.SYNCED,
                last_sync_at=sync_time,
                **values
            )
            session.add(master)
            await session.flush()
            context["masters"][row.case_id] = master
            return Outcome.CREATED

        if not apply_changes(master, values):
            return Outcome.SKIPPED

        master.sync_status = SyncStatus.SYNCED
        master.last_sync_at = sync_time
        await session.flush()
        return Outcome.UPDATED

    def _master_from_summary(self, case_id: str, row: SummaryRow, sync_time: datetime) -> MasterRecord:
        """Master for a summary row whose case has no detail row yet"""
        return MasterRecord(
            case_id=case_id,
            thematic_plan=self.enum_cache.get(EnumCategory.THEMATIC_PLAN, row.thematic_plan),
            proposal_status=self.enum_cache.get(EnumCategory.PROPOSAL_STATUS, row.proposal_status),
            installation_status=self.enum_cache.get(
                EnumCategory.INSTALLATION_STATUS, row.installation_status
            ),
            sync_status=SyncStatus.SYNCED,
            last_sync_at=sync_time,
            **fit_to_columns(
                MasterRecord, {field: getattr(row, field) for field in SUMMARY_TO_MASTER_FIELDS}
            )
        )

    async def _apply_summary(
        self,
        session: AsyncSession,
        op: Operation,
        context: Dict[str, Any],
        sync_time: datetime
    ) -> Outcome:
        row: SummaryRow = op.payload
        case_id = op.key

        created_master = None
        if await self._get_master(session, case_id, context) is None:
            created_master = self._master_from_summary(case_id, row, sync_time)
            session.add(created_master)
            await session.flush()
            logger.debug(f"Created master {case_id} from summary row {row.row_number}")

        values = self._summary_values(row)
        summary = await self._get_summary(session, case_id, context)

        if summary is None:
            summary = SummaryRecord(
                sequence_no=row.sequence_no,
                case_id=case_id,
                sync_status=SyncStatus.SYNCED,
                last_sync_at=sync_time,
                **values
            )
            session.add(summary)
            await session.flush()
            outcome = Outcome.CREATED
        elif apply_changes(summary, values):
            # sequence_no is kept from creation
            summary.sync_status = SyncStatus.SYNCED
            summary.last_sync_at = sync_time
            await session.flush()
            outcome = Outcome.UPDATED
        else:
            outcome = Outcome.SKIPPED

        # Only register records once every write of the row has flushed
        if created_master is not None:
            context["masters"][case_id] = created_master
        context["summaries"][case_id] = summary
        return outcome

    # ------------------------------------------------------------------
    # Missing input dates
    # ------------------------------------------------------------------

    @staticmethod
    def _dates_by_customer(master_rows: List[MasterRow]) -> Dict[str, date]:
        """Lowercased customer name -> input date of the first dated detail row"""
        dates: Dict[str, date] = {}
        for row in master_rows:
            if row.customer_name and row.input_date is not None:
                dates.setdefault(row.customer_name.strip().lower(), row.input_date)
        return dates

    async def _fix_missing_input_dates(self, master_rows: List[MasterRow], sync_time: datetime) -> int:
        """
        Fill masters without an input date from a detail row of the same customer.

        Only masters without a detail row of their own are filled; a detail
        row is authoritative for its own case, dated or not.
        """
        dates = self._dates_by_customer(master_rows)
        if not dates:
            return 0
        detail_ids = {row.case_id for row in master_rows}

        fixed = 0
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        select(MasterRecord).where(
                            MasterRecord.input_date.is_(None),
                            MasterRecord.customer_name.is_not(None)
                        )
                    )
                    for master in result.scalars().all():
                        input_date = dates.get(master.customer_name.strip().lower())
                        if input_date is None or master.case_id in detail_ids:
                            continue
                        master.input_date = input_date
                        master.last_sync_at = sync_time
                        fixed += 1
                        logger.debug(f"Input date of {master.case_id} taken from customer {master.customer_name}")
        except Exception as e:
            raise DatabaseError(
                "Failed to fill missing input dates",
                context={"operation": "UPDATE", "table_name": "master_records"},
                original_exception=e
            )

        if fixed:
            logger.info(f"Filled {fixed} missing input dates by customer name")
        return fixed

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    @staticmethod
    async def _existing_summary_case_ids(session: AsyncSession) -> Set[str]:
        result = await session.execute(select(SummaryRecord.case_id))
        return set(result.scalars().all())

    async def _delete_summaries(self, case_ids: Set[str]) -> int:
        """Delete summaries by case id in one transaction"""
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(SummaryRecord).where(SummaryRecord.case_id.in_(case_ids))
                    )
                    deleted = result.rowcount or 0
        except Exception as e:
            raise DatabaseError(
                "Failed to delete orphaned summary records",
                context={
                    "operation": "DELETE",
                    "table_name": "summary_records",
                    "records": len(case_ids)
                },
                original_exception=e
            )

        logger.info(f"Pre-deleted {deleted} orphaned summary records")
        return deleted

    async def _delete_absent(self, keep: Set[str]) -> int:
        """Full mode: delete every summary and master not in `keep`"""
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    summaries = await session.execute(
                        delete(SummaryRecord).where(SummaryRecord.case_id.not_in(keep))
                    )
                    masters = await session.execute(
                        delete(MasterRecord).where(MasterRecord.case_id.not_in(keep))
                    )
                    deleted = (summaries.rowcount or 0) + (masters.rowcount or 0)
        except Exception as e:
            raise DatabaseError(
                "Failed to delete records absent from the snapshot",
                context={"operation": "DELETE", "table_name": "master_records"},
                original_exception=e
            )

        logger.info(f"Deleted {deleted} records absent from the snapshot")
        return deleted
