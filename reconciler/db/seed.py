"""Idempotent seed data for plan tiers."""

from sqlalchemy import select

from reconciler.db.base import get_session_factory
from reconciler.db.models.plan_tier import PlanTier
from reconciler.domain.tiers import TIER_CATALOG

PLAN_TIERS = [
    {
        "slug": limits.tier.value,
        "name": limits.name,
        "rank": limits.rank,
        "storage_limit_bytes": limits.storage_bytes,
        "project_limit": limits.project_limit,
        "collection_limit": limits.collection_limit,
        "features": list(limits.features),
    }
    for limits in TIER_CATALOG.values()
]


async def seed_plan_tiers() -> None:
    """Insert default plan tiers if they don't already exist.

    Existing rows are left untouched so limits edited in the database survive restarts.
    """
    factory = get_session_factory()

    async with factory() as session:
        result = await session.execute(select(PlanTier.slug))
        existing = set(result.scalars().all())

        for tier_data in PLAN_TIERS:
            if tier_data["slug"] not in existing:
                session.add(PlanTier(**tier_data))

        await session.commit()
