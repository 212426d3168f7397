"""PlanTier model: per-tier resource limits and feature flags."""

from sqlalchemy import JSON, BigInteger, Column, Integer, String

from reconciler.db.base import Base


class PlanTier(Base):
    __tablename__ = "plan_tiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    rank = Column(Integer, nullable=False, default=0)  # higher = more capable

    # Limits (NULL = unlimited)
    storage_limit_bytes = Column(BigInteger, nullable=True)
    project_limit = Column(Integer, nullable=True)
    collection_limit = Column(Integer, nullable=True)

    # ["selection", "collection", "proofing", ...]
    features = Column(JSON, nullable=False, default=list)
