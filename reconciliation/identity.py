"""
Identity Resolver - links summary rows to master records.

Resolution order, first match wins:
1. case_id equals the raw identity
2. alternate_service_code equals the raw identity (resolves to that
   master's case_id)
3. non-numeric identity only: unique case-insensitive customer name match
   against the detail rows of the run
4. otherwise the raw identity itself, flagged "must create"
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from models.master_record import MasterRecord
from schemas.rows import MasterRow, SummaryRow
from reconciliation.normalizer import RowNormalizer
import logging

logger = logging.getLogger(__name__)


class IdentitySnapshot:
    """Lookup maps built once per run, before any transaction opens"""

    def __init__(self):
        self.case_ids: Set[str] = set()
        self.by_alternate_code: Dict[str, str] = {}
        self.by_customer_name: Dict[str, str] = {}
        self._ambiguous_names: Set[str] = set()

    @classmethod
    async def load(cls, session: AsyncSession) -> "IdentitySnapshot":
        """
        Snapshot of the persisted master identities.

        Customer names come only from detail rows (absorb_master_rows), so
        every batch of a run plans against the same name map.
        """
        result = await session.execute(
            select(MasterRecord.case_id, MasterRecord.alternate_service_code)
        )
        snapshot = cls()
        for case_id, alternate_code in result.all():
            snapshot.add(case_id, alternate_code)
        return snapshot

    def add(
        self,
        case_id: str,
        alternate_code: Optional[str] = None,
        customer_name: Optional[str] = None
    ):
        self.case_ids.add(case_id)
        if alternate_code:
            self.by_alternate_code[alternate_code] = case_id
        if customer_name:
            self._add_name(customer_name, case_id)

    def absorb_master_rows(self, rows: Iterable[MasterRow]):
        """Include masters that the detail phase of this run will write, with their names"""
        for row in rows:
            self.add(row.case_id, row.alternate_service_code, row.customer_name)

    def _add_name(self, name: str, case_id: str):
        key = name.strip().lower()
        if not key or key in self._ambiguous_names:
            return
        current = self.by_customer_name.get(key)
        if current is None:
            self.by_customer_name[key] = case_id
        elif current != case_id:
            # Shared name; never used for matching
            del self.by_customer_name[key]
            self._ambiguous_names.add(key)


class IdentityResolver:
    """
    Resolve summary rows to canonical case ids.

    Every resolution is recorded in `resolved`, which later decides which
    existing summary records are orphaned.
    """

    def __init__(self, snapshot: IdentitySnapshot, enable_name_matching: bool = True):
        self.snapshot = snapshot
        self.enable_name_matching = enable_name_matching
        self.resolved: Set[str] = set()

    def _lookup(self, row: SummaryRow) -> Tuple[str, bool]:
        raw_identity = row.raw_identity

        if raw_identity in self.snapshot.case_ids:
            return raw_identity, False

        linked = self.snapshot.by_alternate_code.get(raw_identity)
        if linked is not None:
            return linked, False

        # Numeric identities are literal case/service codes and never match by name
        if (
            self.enable_name_matching
            and not RowNormalizer.is_numeric_identity(raw_identity)
            and row.customer_name
        ):
            matched = self.snapshot.by_customer_name.get(row.customer_name.strip().lower())
            if matched is not None:
                logger.debug(f"Linked {raw_identity} to {matched} by customer name")
                return matched, False

        return raw_identity, True

    def resolve(self, row: SummaryRow) -> Tuple[str, bool]:
        """
        Returns:
            (case_id, must_create)
        """
        case_id, must_create = self._lookup(row)
        self.resolved.add(case_id)
        if must_create:
            # Later rows for the same case link to the master created here
            self.snapshot.case_ids.add(case_id)
        return case_id, must_create

    def dry_run(self, rows: List[SummaryRow]) -> Set[str]:
        """Case ids the rows would resolve to, without recording anything"""
        return {self._lookup(row)[0] for row in rows}
