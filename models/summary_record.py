from sqlalchemy import Column, String, Integer, Numeric, DateTime, Enum, ForeignKey, Index, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, SyncStatus


class SummaryRecord(Base):
    """
    One commercial/contract case, sourced from the summary sheet.

    Every summary record references an existing master record by case_id.
    sequence_no is the display number from column A; it is unique across
    all summary records and is never overwritten by an update.
    """
    __tablename__ = "summary_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    sequence_no = Column(String(20), nullable=False, unique=True)
    case_id = Column(
        String(100),
        ForeignKey("master_records.case_id"),
        nullable=False,
        unique=True,
        index=True
    )

    # Contract
    contract_value = Column(Numeric(18, 2), nullable=True)
    survey_budget = Column(Numeric(18, 2), nullable=True)
    budget_amount = Column(Numeric(18, 2), nullable=True)
    cost_ratio = Column(Numeric(10, 4), nullable=True)  # Fraction of 1
    installation_address = Column(Text, nullable=True)
    service_type = Column(String(100), nullable=True)
    memo_number = Column(String(100), nullable=True)
    design_ref = Column(Integer, nullable=True)

    # Installation
    odp_name = Column(String(255), nullable=True)
    distance_to_odp = Column(Numeric(12, 2), nullable=True)
    installation_progress = Column(Text, nullable=True)
    remark = Column(Text, nullable=True)

    # Copies of master fields shown on the summary sheet
    service_area = Column(String(100), nullable=True, index=True)
    exchange_code = Column(String(100), nullable=True, index=True)
    customer_name = Column(String(255), nullable=True, index=True)
    latitude = Column(String(50), nullable=True)
    longitude = Column(String(50), nullable=True)
    thematic_plan_label = Column(String(150), nullable=True)
    proposal_status_label = Column(String(150), nullable=True)

    # Categorical fields (enum catalog)
    job_status = Column(ForeignKey("enum_catalog.id"), nullable=True)
    installation_status = Column(ForeignKey("enum_catalog.id"), nullable=True)

    # Sync bookkeeping
    sync_status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.SYNCED)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    master = relationship("MasterRecord", back_populates="summaries")

    __table_args__ = (
        Index("idx_summary_job_status", "job_status"),
    )
