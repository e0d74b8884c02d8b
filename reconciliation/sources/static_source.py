"""
In-memory row source
"""

from typing import List, Optional
from reconciliation.base import RowSource
from schemas.rows import RawRow


class StaticRowSource(RowSource):
    """Serves rows held in memory (scripts, tests, rows posted to the API)"""

    def __init__(
        self,
        master_values: Optional[List[RawRow]] = None,
        summary_values: Optional[List[RawRow]] = None,
        source_label: str = "static"
    ):
        super().__init__()
        self.master_values = master_values or []
        self.summary_values = summary_values or []
        self.source_label = source_label

    async def fetch_master_values(self) -> List[RawRow]:
        return list(self.master_values)

    async def fetch_summary_values(self) -> List[RawRow]:
        return list(self.summary_values)
