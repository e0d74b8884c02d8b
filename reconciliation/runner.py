"""
Sync Runner - the single entry point for a reconciliation run.

This module provides:
- Row reading from the configured source (or rows handed in by the caller)
- Normalization into typed rows
- Reconciliation through the engine with mode/batch parameters
- An orphaned-summary check after every completed run
- A sync log entry per run: RUNNING, then SUCCESS / PARTIAL / FAILED
- Single-flight execution: a second run while one is active is rejected
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import logging

from reconciliation.base import RowSource, SheetRole
from reconciliation.sources.static_source import StaticRowSource
from reconciliation.normalizer import RowNormalizer
from reconciliation.enum_cache import EnumCache
from reconciliation.engine import (
    MASTER_ENUM_FIELDS,
    SUMMARY_ENUM_FIELDS,
    ReconciliationEngine,
    SyncOptions,
)
from reconciliation.executor import SyncResult
from reconciliation.validation import check_integrity
from models.base import EnumCategory, SyncLogStatus, SyncMode
from models.sync_log import SyncLog
from schemas.rows import MasterRow, RawRow, SummaryRow
from core.logging import sync_run_var
from core.sanitizer import sanitize_error
from core.exceptions import (
    SyncException,
    ExtractionError,
    SheetReadError,
    SyncInProgressError,
)

logger = logging.getLogger(__name__)

FAILED_SYNC_MESSAGE = "Sync failed, see server logs for details"


class SyncRunner:
    """
    Orchestrates Read -> Normalize -> Reconcile and records the outcome.

    The session factory and row source are injected. One runner instance
    serves the whole process, which makes its lock the single-flight guard.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        source: Optional[RowSource] = None,
        enum_cache: Optional[EnumCache] = None
    ):
        self.session_maker = session_maker
        self.source = source
        self.enum_cache = enum_cache or EnumCache(session_maker)
        self.normalizer = RowNormalizer()
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def _source_for(
        self,
        master_rows: Optional[List[RawRow]],
        summary_rows: Optional[List[RawRow]]
    ) -> RowSource:
        if master_rows is not None or summary_rows is not None:
            return StaticRowSource(master_rows, summary_rows, source_label="request")
        if self.source is None:
            raise ExtractionError("No row source configured")
        return self.source

    async def read_rows(
        self,
        master_rows: Optional[List[RawRow]] = None,
        summary_rows: Optional[List[RawRow]] = None
    ) -> Dict[str, object]:
        """
        Read and normalize both sheets.

        Returns:
            Dictionary with master_rows, summary_rows, skipped and source_label
        """
        source = self._source_for(master_rows, summary_rows)

        try:
            raw_master = await source.read_master_rows()
            raw_summary = await source.read_summary_rows()
        except SyncException:
            raise
        except Exception as e:
            raise SheetReadError(
                "Unexpected error while reading sheet rows",
                context={"source": source.source_label},
                original_exception=e
            )

        masters, master_skipped = self.normalizer.normalize_master_rows(
            raw_master, source.first_row_number[SheetRole.MASTER]
        )
        summaries, summary_skipped = self.normalizer.normalize_summary_rows(
            raw_summary, source.first_row_number[SheetRole.SUMMARY]
        )
        return {
            "master_rows": masters,
            "summary_rows": summaries,
            "skipped": master_skipped + summary_skipped,
            "source_label": source.source_label,
        }

    async def run(
        self,
        mode: SyncMode = SyncMode.INCREMENTAL,
        batch_number: int = 1,
        batch_size: Optional[int] = None,
        master_rows: Optional[List[RawRow]] = None,
        summary_rows: Optional[List[RawRow]] = None,
        **option_overrides
    ) -> SyncResult:
        """
        Run one reconciliation.

        Args:
            mode: full, incremental or batched
            batch_number: 1-based batch to start from (batched mode)
            batch_size: Rows per transaction; defaults to SYNC_BATCH_SIZE
            master_rows: Raw detail rows to use instead of the row source
            summary_rows: Raw summary rows to use instead of the row source
            option_overrides: Any other SyncOptions field

        Returns:
            SyncResult of the engine

        Raises:
            SyncInProgressError: Another run holds the lock
            SyncException: Reading rows or loading the snapshot failed
        """
        if self._lock.locked():
            raise SyncInProgressError("A sync is already in progress")

        async with self._lock:
            mode = SyncMode(mode)
            options_data = {"mode": mode, "batch_number": batch_number, **option_overrides}
            if batch_size:
                options_data["batch_size"] = batch_size
            options = SyncOptions(**options_data)

            label = "request" if master_rows is not None or summary_rows is not None else (
                self.source.source_label if self.source else "none"
            )
            log_id = await self._start_log(label, options)
            run_token = sync_run_var.set(str(log_id))
            try:
                try:
                    # --------------------------------------------------
                    # PHASE 1: READ + NORMALIZE
                    # --------------------------------------------------
                    rows = await self.read_rows(master_rows, summary_rows)

                    # --------------------------------------------------
                    # PHASE 2: RECONCILE
                    # --------------------------------------------------
                    engine = ReconciliationEngine(self.session_maker, enum_cache=self.enum_cache)
                    result = await engine.reconcile(
                        rows["master_rows"],
                        rows["summary_rows"],
                        options,
                        normalization_skipped=rows["skipped"]
                    )

                    if result.completed:
                        async with self.session_maker() as session:
                            result.orphaned_summaries = len(await check_integrity(session))

                except asyncio.CancelledError:
                    # Foreground request timed out; committed batches stay committed
                    logger.warning(f"Sync run {log_id} cancelled")
                    await self._finish_log(
                        log_id, SyncLogStatus.FAILED, "Sync cancelled after request timeout"
                    )
                    raise

                except SyncException as e:
                    logger.error(
                        f"Sync failed: {e.message}",
                        extra={"error_context": e.to_dict()}
                    )
                    await self._finish_log(
                        log_id, SyncLogStatus.FAILED, sanitize_error(e, FAILED_SYNC_MESSAGE)
                    )
                    raise

                except Exception as e:
                    logger.exception("Unexpected error in sync run")
                    await self._finish_log(
                        log_id, SyncLogStatus.FAILED, sanitize_error(e, FAILED_SYNC_MESSAGE)
                    )
                    raise SyncException(
                        "Unexpected error in sync run",
                        context={"mode": mode.value, "batch_number": batch_number},
                        original_exception=e
                    )

                # --------------------------------------------------
                # PHASE 3: FINALIZE SYNC LOG
                # --------------------------------------------------
                if result.completed and result.errors == 0:
                    status = SyncLogStatus.SUCCESS
                else:
                    status = SyncLogStatus.PARTIAL
                await self._finish_log(log_id, status, describe_result(result), result)
                return result
            finally:
                sync_run_var.reset(run_token)

    async def sync_enums(self) -> Dict[str, int]:
        """Align the enum catalog with the values present in the sheet"""
        rows = await self.read_rows()
        observed = observed_enum_values(rows["master_rows"], rows["summary_rows"])
        return await self.enum_cache.sync_catalog(observed)

    # ========================================================================
    # Sync log
    # ========================================================================

    async def _start_log(self, source_label: str, options: SyncOptions) -> int:
        async with self.session_maker() as session:
            async with session.begin():
                entry = SyncLog(
                    status=SyncLogStatus.RUNNING,
                    source_label=source_label,
                    mode=options.mode.value,
                    batch_number=options.batch_number,
                    started_at=datetime.utcnow()
                )
                session.add(entry)
                await session.flush()
                return entry.id

    async def _finish_log(
        self,
        log_id: int,
        status: SyncLogStatus,
        message: str,
        result: Optional[SyncResult] = None
    ):
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    entry = await session.get(SyncLog, log_id)
                    if entry is None:
                        return
                    entry.status = status
                    entry.message = message
                    entry.synced_at = datetime.utcnow()
                    if result is not None:
                        entry.created = result.created
                        entry.updated = result.updated
                        entry.deleted = result.deleted
                        entry.skipped = result.skipped
                        entry.errors = result.errors
                        entry.total_records = result.total_records
                        entry.processed_records = result.processed_records
                        entry.completed = result.completed
                        entry.duration_seconds = result.duration_seconds
        except Exception as e:
            # The run outcome stands even if its log entry cannot be written
            logger.error(
                f"Failed to update sync log {log_id}: {str(e)}",
                extra={"error_context": {"sync_log_id": log_id, "status": status.value}}
            )


def describe_result(result: SyncResult) -> str:
    if result.completed:
        message = (
            f"Created {result.created}, updated {result.updated}, "
            f"deleted {result.deleted}, skipped {result.skipped}, errors {result.errors}"
        )
        if result.dates_fixed:
            message += f", {result.dates_fixed} dates fixed"
        if result.orphaned_summaries:
            message += f", {result.orphaned_summaries} summaries without a master"
        return message
    return (
        f"Processed {result.processed_records} of {result.total_records} records, "
        f"continue with batch {result.next_batch_number}"
    )


def observed_enum_values(
    master_rows: List[MasterRow],
    summary_rows: List[SummaryRow]
) -> Dict[EnumCategory, Dict[str, str]]:
    """category -> {token: sheet label} for every enum value in the rows"""
    observed: Dict[EnumCategory, Dict[str, str]] = {category: {} for category in EnumCategory}

    for row in master_rows:
        for field, category in MASTER_ENUM_FIELDS.items():
            token = getattr(row, field)
            if token:
                observed[category].setdefault(token, "")

    for row in summary_rows:
        for field, category in SUMMARY_ENUM_FIELDS.items():
            token = getattr(row, field)
            if token:
                observed[category].setdefault(token, "")
        if row.thematic_plan:
            observed[EnumCategory.THEMATIC_PLAN][row.thematic_plan] = row.thematic_plan_label or ""
        if row.proposal_status:
            observed[EnumCategory.PROPOSAL_STATUS][row.proposal_status] = row.proposal_status_label or ""

    # A category absent from the sheet is left alone rather than deactivated
    return {category: values for category, values in observed.items() if values}
