"""Database-backed UsageReader and TierCatalog for the TierTransitionValidator."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.db.models.plan_tier import PlanTier
from reconciler.db.models.resource_usage import ResourceUsage
from reconciler.domain.events import Tier
from reconciler.domain.tiers import TIER_CATALOG, ResourceUsageSnapshot, TierLimits, TierTransitionValidator


class DatabaseUsageReader:
    """Reads the counters the resource services maintain in ``resource_usage``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_usage(self, user_id: str) -> ResourceUsageSnapshot:
        async with self.session_factory() as session:
            result = await session.execute(select(ResourceUsage).where(ResourceUsage.user_id == user_id))
            row = result.scalar_one_or_none()

        if row is None:
            return ResourceUsageSnapshot()
        return ResourceUsageSnapshot(
            storage_bytes=row.storage_bytes or 0,
            project_count=row.project_count or 0,
            collection_count=row.collection_count or 0,
        )


class DatabaseTierCatalog:
    """Tier limits from ``plan_tiers``, falling back to the built-in catalogue for unseeded tiers."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_tier_limits(self, tier: Tier) -> TierLimits:
        tier = Tier(tier)
        async with self.session_factory() as session:
            result = await session.execute(select(PlanTier).where(PlanTier.slug == tier.value))
            row = result.scalar_one_or_none()

        if row is None:
            return TIER_CATALOG[tier]
        return TierLimits(
            tier=tier,
            name=row.name,
            rank=row.rank,
            storage_bytes=row.storage_limit_bytes,
            project_limit=row.project_limit,
            collection_limit=row.collection_limit,
            features=tuple(row.features or ()),
        )


def build_tier_validator(session_factory: async_sessionmaker[AsyncSession]) -> TierTransitionValidator:
    return TierTransitionValidator(DatabaseTierCatalog(session_factory), DatabaseUsageReader(session_factory))


def _percent(used: int, limit: int | None) -> float | None:
    if limit is None:
        return None
    if limit <= 0:
        return 100.0
    return round(min(used / limit * 100, 100.0), 1)


async def usage_summary(session_factory: async_sessionmaker[AsyncSession], user_id: str, tier: Tier) -> dict:
    """Current counters against the limits of ``tier``, with percentage used per resource."""
    usage = await DatabaseUsageReader(session_factory).get_usage(user_id)
    limits = await DatabaseTierCatalog(session_factory).get_tier_limits(tier)
    return {
        "tier": limits.tier.value,
        "usage": usage.to_dict(),
        "limits": limits.to_dict(),
        "percent_used": {
            "storage": _percent(usage.storage_bytes, limits.storage_bytes),
            "projects": _percent(usage.project_count, limits.project_limit),
            "collections": _percent(usage.collection_count, limits.collection_limit),
        },
    }
