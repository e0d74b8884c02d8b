from sqlalchemy import Column, String, Integer, Numeric, Date, DateTime, Enum, ForeignKey, Index, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, SyncStatus


class MasterRecord(Base):
    """
    One physical installation case, sourced from the detail sheet.

    Field Mapping (detail sheet, columns A:U):
    - 1 age -> age_days
    - 2 month -> month_label
    - 3 input date -> input_date
    - 4 case id -> case_id
    - 5 order type -> order_type
    - 6 service area -> service_area
    - 7 exchange -> exchange_code
    - 8 customer -> customer_name
    - 9/10 coordinates -> latitude / longitude
    - 11 constraint -> constraint_category (enum)
    - 12 thematic plan -> thematic_plan (enum)
    - 13 budget -> budget_amount
    - 14 design value -> design_value
    - 15 proposal status -> proposal_status (enum)
    - 16 design status -> design_status
    - 17 proposal ref -> proposal_ref
    - 18 installation status -> installation_status (enum)
    - 19 remark -> remark_category (enum)
    - 20 new service code -> alternate_service_code

    Summary rows whose case is unknown create a master record from the
    fields available on the summary row.
    """
    __tablename__ = "master_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Identity
    case_id = Column(String(100), nullable=False, unique=True, index=True)
    alternate_service_code = Column(String(100), nullable=True, index=True)

    # Descriptive fields
    customer_name = Column(String(255), nullable=True, index=True)
    latitude = Column(String(50), nullable=True)
    longitude = Column(String(50), nullable=True)
    service_area = Column(String(100), nullable=True, index=True)
    exchange_code = Column(String(100), nullable=True, index=True)
    order_type = Column(String(100), nullable=True)
    month_label = Column(String(50), nullable=True)
    input_date = Column(Date, nullable=True)
    age_days = Column(Integer, nullable=True)

    # Money and design
    budget_amount = Column(Numeric(18, 2), nullable=True)
    design_value = Column(Numeric(18, 2), nullable=True)
    design_status = Column(String(100), nullable=True)
    proposal_ref = Column(String(100), nullable=True)

    # Installation
    odp_name = Column(String(255), nullable=True)
    go_live_date = Column(Date, nullable=True)
    capacity_available = Column(Integer, nullable=True)
    capacity_used = Column(Integer, nullable=True)
    capacity_total = Column(Integer, nullable=True)
    occupancy_pct = Column(Numeric(7, 2), nullable=True)
    notes = Column(Text, nullable=True)

    # Categorical fields (enum catalog)
    constraint_category = Column(ForeignKey("enum_catalog.id"), nullable=True)
    thematic_plan = Column(ForeignKey("enum_catalog.id"), nullable=True)
    proposal_status = Column(ForeignKey("enum_catalog.id"), nullable=True)
    installation_status = Column(ForeignKey("enum_catalog.id"), nullable=True)
    remark_category = Column(ForeignKey("enum_catalog.id"), nullable=True)

    # Sync bookkeeping
    sync_status = Column(Enum(SyncStatus), nullable=False, default=SyncStatus.SYNCED)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    summaries = relationship("SummaryRecord", back_populates="master")

    __table_args__ = (
        Index("idx_master_area_exchange", "service_area", "exchange_code"),
    )
