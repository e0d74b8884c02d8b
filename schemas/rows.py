"""
Typed sheet rows produced by the row normalizer.

Nothing downstream of normalization handles raw cell lists; the
reconciliation engine only sees MasterRow and SummaryRow.
"""

from pydantic import BaseModel, Field
from typing import Optional, Union, List
from datetime import date
from decimal import Decimal

# A cell as returned by the Sheets API or a CSV export
Cell = Union[str, int, float, None]
RawRow = List[Cell]


class MasterRow(BaseModel):
    """Normalized detail-sheet row"""
    row_number: int
    case_id: str = Field(..., min_length=1)
    alternate_service_code: Optional[str] = None

    age_days: Optional[int] = None
    month_label: Optional[str] = None
    input_date: Optional[date] = None
    order_type: Optional[str] = None
    service_area: Optional[str] = None
    exchange_code: Optional[str] = None
    customer_name: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    budget_amount: Optional[Decimal] = None
    design_value: Optional[Decimal] = None
    design_status: Optional[str] = None
    proposal_ref: Optional[str] = None

    # Canonical enum tokens; resolved to catalog ids by the engine
    constraint_category: Optional[str] = None
    thematic_plan: Optional[str] = None
    proposal_status: Optional[str] = None
    installation_status: Optional[str] = None
    remark_category: Optional[str] = None


class SummaryRow(BaseModel):
    """Normalized summary-sheet row"""
    row_number: int
    sequence_no: Optional[str] = None
    raw_identity: str = Field(..., min_length=1)

    job_status: Optional[str] = None
    installation_status: Optional[str] = None
    thematic_plan: Optional[str] = None
    proposal_status: Optional[str] = None

    cost_ratio: Optional[Decimal] = None
    service_area: Optional[str] = None
    exchange_code: Optional[str] = None
    customer_name: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    installation_address: Optional[str] = None
    service_type: Optional[str] = None
    contract_value: Optional[Decimal] = None
    design_ref: Optional[int] = None
    budget_amount: Optional[Decimal] = None
    survey_budget: Optional[Decimal] = None
    memo_number: Optional[str] = None
    installation_progress: Optional[str] = None
    odp_name: Optional[str] = None
    distance_to_odp: Optional[Decimal] = None
    remark: Optional[str] = None

    # Raw labels kept for display copies and catalog labels
    thematic_plan_label: Optional[str] = None
    proposal_status_label: Optional[str] = None
