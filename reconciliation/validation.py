"""
Pre-flight validation of sheet rows and post-run integrity checks.
"""

from collections import Counter
from typing import List
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from models.master_record import MasterRecord
from models.summary_record import SummaryRecord
from schemas.rows import MasterRow, SummaryRow
from reconciliation.identity import IdentityResolver, IdentitySnapshot
import logging

logger = logging.getLogger(__name__)


class ValidationReport(BaseModel):
    """Findings of validate_sync_data"""
    master_count: int
    summary_count: int
    duplicate_master_ids: List[str] = Field(default_factory=list)
    summaries_without_master: List[str] = Field(default_factory=list)
    invalid_summary_rows: List[int] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.duplicate_master_ids and not self.invalid_summary_rows

    def render(self) -> str:
        """Plain-text report for logs and the validate endpoint"""
        lines = [
            "SYNC DATA VALIDATION",
            f"Detail rows: {self.master_count}",
            f"Summary rows: {self.summary_count}",
        ]
        if self.duplicate_master_ids:
            lines.append(
                f"Duplicate case ids in detail sheet ({len(self.duplicate_master_ids)}): "
                + ", ".join(self.duplicate_master_ids[:20])
            )
        if self.summaries_without_master:
            lines.append(
                f"Summary rows without a detail row ({len(self.summaries_without_master)}), "
                "masters will be created from the summary: "
                + ", ".join(self.summaries_without_master[:20])
            )
        if self.invalid_summary_rows:
            lines.append(
                f"Summary rows with a missing or repeated NO ({len(self.invalid_summary_rows)}): rows "
                + ", ".join(str(n) for n in self.invalid_summary_rows[:20])
            )
        lines.append("Result: OK" if self.valid else "Result: ISSUES FOUND")
        return "\n".join(lines)


def validate_sync_data(
    master_rows: List[MasterRow],
    summary_rows: List[SummaryRow],
    enable_name_matching: bool = True
) -> ValidationReport:
    """
    Check normalized rows before a sync.

    Only the sheet itself is consulted: a summary row "lacks a master" when
    no detail row resolves for it.
    """
    id_counts = Counter(row.case_id for row in master_rows)
    duplicates = sorted(case_id for case_id, count in id_counts.items() if count > 1)

    snapshot = IdentitySnapshot()
    snapshot.absorb_master_rows(master_rows)
    resolver = IdentityResolver(snapshot, enable_name_matching=enable_name_matching)

    without_master = []
    for row in summary_rows:
        case_id, must_create = resolver.resolve(row)
        if must_create:
            without_master.append(case_id)

    sequence_counts = Counter(row.sequence_no for row in summary_rows if row.sequence_no)
    invalid_rows = [
        row.row_number for row in summary_rows
        if not row.sequence_no or sequence_counts[row.sequence_no] > 1
    ]

    report = ValidationReport(
        master_count=len(master_rows),
        summary_count=len(summary_rows),
        duplicate_master_ids=duplicates,
        summaries_without_master=without_master,
        invalid_summary_rows=invalid_rows
    )
    logger.info(
        f"Validated {report.master_count} detail and {report.summary_count} summary rows: "
        f"{len(duplicates)} duplicate ids, {len(without_master)} without master, "
        f"{len(invalid_rows)} invalid"
    )
    return report


async def check_integrity(session: AsyncSession) -> List[str]:
    """
    Case ids of summary records whose master is missing.

    The foreign key and the master-before-summary ordering should make this
    empty; anything found is logged as a data-integrity warning.
    """
    result = await session.execute(
        select(SummaryRecord.case_id)
        .outerjoin(MasterRecord, SummaryRecord.case_id == MasterRecord.case_id)
        .where(MasterRecord.id.is_(None))
    )
    orphans = sorted(result.scalars().all())
    if orphans:
        logger.warning(
            f"Data integrity: {len(orphans)} summary records without a master",
            extra={"error_context": {"orphaned_case_ids": orphans[:50]}}
        )
    return orphans
