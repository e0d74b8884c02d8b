from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()

# BIGINT does not autoincrement on SQLite, which the test suite runs on
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


# ============================================================================
# ENUMS
# ============================================================================

class SyncStatus(str, enum.Enum):
    """Per-record reconciliation bookkeeping"""
    SYNCED = "SYNCED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class SyncLogStatus(str, enum.Enum):
    """Outcome of one sync run"""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class SyncMode(str, enum.Enum):
    """Reconciliation modes"""
    FULL = "full"
    INCREMENTAL = "incremental"
    BATCHED = "batched"


class EnumCategory(str, enum.Enum):
    """Categorical domains stored in the enum catalog"""
    JOB_STATUS = "JOB_STATUS"
    INSTALLATION_STATUS = "INSTALLATION_STATUS"
    CONSTRAINT_CATEGORY = "CONSTRAINT_CATEGORY"
    THEMATIC_PLAN = "THEMATIC_PLAN"
    PROPOSAL_STATUS = "PROPOSAL_STATUS"
    REMARK_CATEGORY = "REMARK_CATEGORY"
