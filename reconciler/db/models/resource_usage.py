"""ResourceUsage model: per-user usage counters maintained by the resource services."""

from sqlalchemy import BigInteger, Column, Integer, String

from reconciler.db.base import Base, UTCDateTime, utcnow


class ResourceUsage(Base):
    __tablename__ = "resource_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), unique=True, nullable=False, index=True)

    storage_bytes = Column(BigInteger, nullable=False, default=0)
    project_count = Column(Integer, nullable=False, default=0)
    collection_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
