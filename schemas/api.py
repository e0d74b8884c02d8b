"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Generic, TypeVar
from datetime import datetime
from decimal import Decimal
from models.base import SyncLogStatus, SyncMode, SyncStatus
from reconciliation.executor import SyncResult
from schemas.rows import RawRow

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    request_id: str
    api_latency_ms: int
    data: T

# ============================================================================
# Health Check Schemas
# ============================================================================

class SyncLogInfo(BaseModel):
    """One sync log entry"""
    id: int
    status: SyncLogStatus
    message: Optional[str] = None
    source_label: Optional[str] = None
    mode: Optional[str] = None
    batch_number: Optional[int] = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    total_records: int = 0
    processed_records: int = 0
    completed: bool = False
    duration_seconds: Optional[float] = None
    started_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    database_connected: bool
    sync_in_progress: bool = False
    last_sync: Optional[SyncLogInfo] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    # Declared last so the validator sees the fields above
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        last_sync = values.get("last_sync")
        if last_sync is not None and last_sync.status == "FAILED":
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "sync_in_progress": False,
                "last_sync": {
                    "id": 42,
                    "status": "SUCCESS",
                    "source_label": "google_sheets",
                    "mode": "incremental",
                    "created": 3,
                    "updated": 12,
                    "skipped": 480,
                    "completed": True
                }
            }
        }

# ============================================================================
# Sync Schemas
# ============================================================================

class SyncRequest(BaseModel):
    """
    Optional body for POST /sync.

    When rows are supplied they replace the configured row source; header
    rows are detected and removed the same way as for the sheet.
    """
    master_rows: Optional[List[RawRow]] = None
    summary_rows: Optional[List[RawRow]] = None
    delete_orphans: bool = True
    enable_name_matching: bool = True


class SyncResponse(BaseModel):
    """Result of a foreground sync or the acknowledgement of a background one"""
    status: str
    message: str
    mode: SyncMode
    result: Optional[SyncResult] = None

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "status": "PARTIAL",
                "message": "Processed 100 of 240 records, continue with batch 3",
                "mode": "batched",
                "result": {
                    "created": 4,
                    "updated": 20,
                    "deleted": 1,
                    "skipped": 76,
                    "errors": 0,
                    "batches_processed": 2,
                    "total_records": 240,
                    "processed_records": 100,
                    "completed": False,
                    "remaining_records": 140,
                    "next_batch_number": 3,
                    "state": "TRUNCATED_BY_TIMEOUT",
                    "duration_seconds": 49.8
                }
            }
        }


class SyncStatusResponse(BaseModel):
    sync_in_progress: bool
    recent: List[SyncLogInfo] = Field(default_factory=list)


class ValidationReportResponse(BaseModel):
    """Pre-flight check of the sheet rows"""
    valid: bool
    master_count: int
    summary_count: int
    duplicate_master_ids: List[str] = Field(default_factory=list)
    summaries_without_master: List[str] = Field(default_factory=list)
    invalid_summary_rows: List[int] = Field(default_factory=list)
    orphaned_summary_records: List[str] = Field(default_factory=list)
    report: str


class EnumSyncResponse(BaseModel):
    created: int
    reactivated: int
    deactivated: int

# ============================================================================
# Survey Schemas
# ============================================================================

class SurveyQueryParams(BaseModel):
    """Query parameters for the survey list endpoint"""
    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    page_size: int = Field(default=50, ge=1, le=500, description="Items per page")

    search: Optional[str] = Field(None, description="Search case id, customer name or sequence no")
    job_status: Optional[str] = Field(None, description="Filter by job status value")
    service_area: Optional[str] = Field(None, description="Filter by service area")
    exchange_code: Optional[str] = Field(None, description="Filter by exchange code")
    budget_min: Optional[Decimal] = Field(None, ge=0)
    budget_max: Optional[Decimal] = Field(None, ge=0)
    year: Optional[int] = Field(None, ge=2000, le=2100, description="Master input date year")

    @validator("budget_max")
    def validate_budget_range(cls, v, values):
        low = values.get("budget_min")
        if v is not None and low is not None and v < low:
            raise ValueError("budget_max must not be below budget_min")
        return v


class SurveyResponse(BaseModel):
    """Summary record with its enum values expanded"""
    id: int
    sequence_no: str
    case_id: str

    job_status: Optional[str] = None
    installation_status: Optional[str] = None
    thematic_plan: Optional[str] = None
    proposal_status: Optional[str] = None

    cost_ratio: Optional[Decimal] = None
    contract_value: Optional[Decimal] = None
    survey_budget: Optional[Decimal] = None
    budget_amount: Optional[Decimal] = None
    distance_to_odp: Optional[Decimal] = None

    service_area: Optional[str] = None
    exchange_code: Optional[str] = None
    customer_name: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    installation_address: Optional[str] = None
    service_type: Optional[str] = None
    design_ref: Optional[int] = None
    memo_number: Optional[str] = None
    installation_progress: Optional[str] = None
    odp_name: Optional[str] = None
    remark: Optional[str] = None

    sync_status: SyncStatus
    last_sync_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "id": 1,
                "sequence_no": "0001",
                "case_id": "1002237835",
                "job_status": "APPROVED",
                "installation_status": "GO_LIVE",
                "cost_ratio": "0.4500",
                "contract_value": "5000000.00",
                "customer_name": "PT Sinar Jaya",
                "sync_status": "SYNCED",
                "created_at": "2024-01-15T10:30:00Z",
                "updated_at": "2024-01-15T10:30:00Z"
            }
        }


class SurveyUpdateRequest(BaseModel):
    """Partial update; enum fields take sheet-style values ("Go Live")"""
    case_id: Optional[str] = Field(None, min_length=1)
    job_status: Optional[str] = None
    installation_status: Optional[str] = None
    thematic_plan: Optional[str] = None
    proposal_status: Optional[str] = None

    cost_ratio: Optional[Decimal] = None
    contract_value: Optional[Decimal] = None
    survey_budget: Optional[Decimal] = None
    budget_amount: Optional[Decimal] = None
    distance_to_odp: Optional[Decimal] = None

    service_area: Optional[str] = None
    exchange_code: Optional[str] = None
    customer_name: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    installation_address: Optional[str] = None
    service_type: Optional[str] = None
    design_ref: Optional[int] = None
    memo_number: Optional[str] = None
    installation_progress: Optional[str] = None
    odp_name: Optional[str] = None
    remark: Optional[str] = None


class SurveyCreateRequest(SurveyUpdateRequest):
    sequence_no: str = Field(..., min_length=1)
    case_id: str = Field(..., min_length=1)


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class SurveyListResponse(BaseModel):
    """Paginated survey list"""
    items: List[SurveyResponse]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)

# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(BaseModel):
    """Dashboard statistics"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    total_surveys: int
    total_masters: int
    pending: int = Field(..., description="Proposal status set and not yet APPROVED or CANCEL")
    go_live: int = Field(..., description="Job status GO_LIVE")
    approval_rate: float = Field(..., ge=0, le=100, description="Approved share, percent")
    profit_count: int = Field(..., description="Budget below contract value")
    loss_count: int = Field(..., description="Budget above contract value")

    by_job_status: Dict[str, int] = Field(default_factory=dict)
    by_installation_status: Dict[str, int] = Field(default_factory=dict)

    last_sync: Optional[SyncLogInfo] = None

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "total_surveys": 240,
                "total_masters": 260,
                "pending": 85,
                "go_live": 120,
                "approval_rate": 72.5,
                "profit_count": 180,
                "loss_count": 42,
                "by_job_status": {"APPROVED": 174, "REVIEW": 66}
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Resource not found",
                "detail": "Survey not found",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
