"""
CSV export row source
"""

import asyncio
import pandas as pd
from typing import List
from pathlib import Path
from reconciliation.base import RowSource
from schemas.rows import RawRow
from core.exceptions import CSVExtractionError
import logging

logger = logging.getLogger(__name__)


class CSVSource(RowSource):
    """
    Read the two sheets from CSV exports ("File > Download > CSV").

    Cells are kept as text, exactly as the sheet renders them, so the
    normalizer sees the same values the Sheets API would return.
    """

    source_label = "csv"

    def __init__(self, master_path: str, summary_path: str):
        super().__init__()
        self.master_path = Path(master_path)
        self.summary_path = Path(summary_path)

    async def fetch_master_values(self) -> List[RawRow]:
        return await asyncio.to_thread(self._read, self.master_path)

    async def fetch_summary_values(self) -> List[RawRow]:
        return await asyncio.to_thread(self._read, self.summary_path)

    @staticmethod
    def _read(path: Path) -> List[RawRow]:
        if not path.exists():
            raise CSVExtractionError(
                f"CSV file not found: {path}",
                context={"file_path": str(path)}
            )

        logger.info(f"Reading CSV from {path}")

        try:
            # No header inference: header rows are detected by content later
            df = pd.read_csv(
                path,
                header=None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=False
            )
        except pd.errors.EmptyDataError:
            return []
        except Exception as e:
            raise CSVExtractionError(
                "Failed to parse CSV export",
                context={"file_path": str(path)},
                original_exception=e
            )

        rows = [
            [cell if cell != "" else None for cell in record]
            for record in df.itertuples(index=False, name=None)
        ]
        logger.info(f"Read {len(rows)} rows from CSV")
        return rows
