"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (SyncStatus, SyncLogStatus,
          SyncMode, EnumCategory)
    master_record: Physical installation cases from the detail sheet
    summary_record: Commercial/contract cases from the summary sheet
    enum_catalog: Dynamically discovered categorical values
    sync_log: Audit trail of reconciliation runs

Database Schema:
    All models inherit from the Base declarative class and only use portable
    column types, so the same schema runs on PostgreSQL and SQLite.

Usage:
    from models import MasterRecord, SummaryRecord, EnumCatalogEntry, SyncLog
    from models.base import EnumCategory, SyncMode

Example:
    master = MasterRecord(case_id="1002237835", customer_name="PT Contoh")
    session.add(master)
    await session.flush()
    session.add(SummaryRecord(sequence_no="0001", case_id=master.case_id))
    await session.commit()

Relationships:
    - MasterRecord → SummaryRecord (one-to-many by case_id)
    - MasterRecord / SummaryRecord → EnumCatalogEntry (categorical FKs)
"""

from models.base import Base, SyncStatus, SyncLogStatus, SyncMode, EnumCategory
from models.enum_catalog import EnumCatalogEntry
from models.master_record import MasterRecord
from models.summary_record import SummaryRecord
from models.sync_log import SyncLog

__all__ = [
    "Base",
    "SyncStatus",
    "SyncLogStatus",
    "SyncMode",
    "EnumCategory",
    "EnumCatalogEntry",
    "MasterRecord",
    "SummaryRecord",
    "SyncLog",
]
