"""
Abstract row source and row sink
"""

import enum
from abc import ABC, abstractmethod
from typing import List, Optional
from pydantic import BaseModel
from schemas.rows import RawRow
from reconciliation.normalizer import find_detail_header, find_summary_header, strip_header
import logging

logger = logging.getLogger(__name__)


class SheetRole(str, enum.Enum):
    MASTER = "master"
    SUMMARY = "summary"


class MatchKey(BaseModel):
    """
    Locates a row in the sheet.

    `primary` is the row's display identifier (sequence no for summary rows,
    case id for master rows); the other fields are tried in order when the
    primary lookup misses.
    """
    primary: Optional[str] = None
    case_id: Optional[str] = None
    customer_name: Optional[str] = None


class RowSource(ABC):
    """
    Base class for everything that yields raw sheet rows.

    Reads are idempotent. Header rows are detected and removed here, and the
    sheet row number of the first data row is remembered per role.
    """

    source_label: str = "rows"

    def __init__(self):
        self.first_row_number = {SheetRole.MASTER: 2, SheetRole.SUMMARY: 2}

    @abstractmethod
    async def fetch_master_values(self) -> List[RawRow]:
        """All cells of the detail sheet, header rows included"""
        pass

    @abstractmethod
    async def fetch_summary_values(self) -> List[RawRow]:
        """All cells of the summary sheet, header rows included"""
        pass

    async def read_master_rows(self) -> List[RawRow]:
        values = await self.fetch_master_values()
        rows, first = strip_header(values, find_detail_header(values))
        self.first_row_number[SheetRole.MASTER] = first
        logger.info(f"Read {len(rows)} detail rows from {self.source_label}")
        return rows

    async def read_summary_rows(self) -> List[RawRow]:
        values = await self.fetch_summary_values()
        rows, first = strip_header(values, find_summary_header(values))
        self.first_row_number[SheetRole.SUMMARY] = first
        logger.info(f"Read {len(rows)} summary rows from {self.source_label}")
        return rows


class RowSink(ABC):
    """Single-row writes used by direct record edits"""

    @abstractmethod
    async def append_row(self, role: SheetRole, row: RawRow) -> bool:
        pass

    @abstractmethod
    async def update_row(self, role: SheetRole, match_key: MatchKey, row: RawRow) -> bool:
        pass

    @abstractmethod
    async def delete_row(self, role: SheetRole, match_key: MatchKey) -> bool:
        pass
