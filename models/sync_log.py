from sqlalchemy import Column, String, Integer, Enum, DateTime, Float, Boolean, Text, Index
from datetime import datetime
from models.base import Base, BigIntPK, SyncLogStatus


class SyncLog(Base):
    """
    Append-only audit record of each reconciliation run.

    Purpose:
    - Outcome of background runs (the caller gets no push notification)
    - Failure tracking with the sanitized message
    - Run history for the stats endpoint
    """
    __tablename__ = "sync_logs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    status = Column(Enum(SyncLogStatus), nullable=False, default=SyncLogStatus.RUNNING, index=True)
    message = Column(Text, nullable=True)
    source_label = Column(String(100), nullable=False)
    mode = Column(String(20), nullable=False)
    batch_number = Column(Integer, nullable=True)

    # Result counters
    created = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    deleted = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    errors = Column(Integer, default=0)
    total_records = Column(Integer, default=0)
    processed_records = Column(Integer, default=0)
    completed = Column(Boolean, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    synced_at = Column(DateTime, nullable=True, index=True)

    __table_args__ = (
        Index("idx_sync_log_status_started", "status", "started_at"),
    )
