from sqlalchemy import Column, String, Boolean, Enum, DateTime, UniqueConstraint, Index
from datetime import datetime
from models.base import Base, BigIntPK, EnumCategory


class EnumCatalogEntry(Base):
    """
    Canonical value of a categorical sheet column.

    Entries are created the first time a normalized value is seen during a
    sync run and are never deleted automatically. Values that disappear from
    the sheet are only marked inactive by an explicit catalog sync.
    """
    __tablename__ = "enum_catalog"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    category = Column(Enum(EnumCategory), nullable=False)
    value = Column(String(150), nullable=False)  # Canonical token, e.g. GO_LIVE
    display_label = Column(String(255), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("category", "value", name="uq_enum_catalog_category_value"),
        Index("idx_enum_catalog_category_active", "category", "active"),
    )
