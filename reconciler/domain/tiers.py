"""Tier catalogue and downgrade safety checks.

A downgrade (including cancellation, which lands the user on starter) is
only safe when every resource the user holds fits inside the target tier's
limits. The check runs synchronously in the cancellation request path.
"""

from dataclasses import asdict, dataclass, field
from typing import Protocol

import structlog

from reconciler.domain.events import Tier

logger = structlog.get_logger(__name__)

GB = 1024**3

FREE_TIER = Tier.STARTER


@dataclass(frozen=True)
class TierLimits:
    """Limits for one tier. None means unlimited."""

    tier: Tier
    name: str
    rank: int
    storage_bytes: int | None
    project_limit: int | None
    collection_limit: int | None
    features: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["features"] = list(self.features)
        return data


_STARTER_FEATURES = ("selection", "collection")
_PRO_FEATURES = _STARTER_FEATURES + ("proofing", "custom_domain", "remove_branding")
_STUDIO_FEATURES = _PRO_FEATURES + ("raw_files", "advanced_analytics")
_BUSINESS_FEATURES = _STUDIO_FEATURES + ("team", "white_label", "api")

TIER_CATALOG: dict[Tier, TierLimits] = {
    Tier.STARTER: TierLimits(Tier.STARTER, "Starter", 0, 5 * GB, 3, 2, _STARTER_FEATURES),
    Tier.PRO: TierLimits(Tier.PRO, "Pro", 1, 100 * GB, None, None, _PRO_FEATURES),
    Tier.STUDIO: TierLimits(Tier.STUDIO, "Studio", 2, 500 * GB, None, None, _STUDIO_FEATURES),
    # Business storage is a soft cap handled by support, not enforced here
    Tier.BUSINESS: TierLimits(Tier.BUSINESS, "Business", 3, None, None, None, _BUSINESS_FEATURES),
}


def tier_rank(tier: Tier | str) -> int:
    return TIER_CATALOG[Tier(tier)].rank


def tier_change_action(from_tier: Tier | str | None, to_tier: Tier | str) -> str:
    """Classify a tier change for the history log."""
    if from_tier is None or Tier(from_tier) is FREE_TIER:
        return "created"
    if tier_rank(to_tier) > tier_rank(from_tier):
        return "upgraded"
    if tier_rank(to_tier) < tier_rank(from_tier):
        return "downgraded"
    return "created"


@dataclass(frozen=True)
class ResourceUsageSnapshot:
    storage_bytes: int = 0
    project_count: int = 0
    collection_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ResourceLimitError:
    """One resource whose current usage exceeds the target tier's limit."""

    resource: str  # storage | projects | collections
    usage: int
    limit: int
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DowngradeValidation:
    target_tier: Tier
    valid: bool
    errors: list[ResourceLimitError] = field(default_factory=list)
    usage: ResourceUsageSnapshot = field(default_factory=ResourceUsageSnapshot)
    limits: TierLimits | None = None

    def to_dict(self) -> dict:
        return {
            "target_tier": self.target_tier.value,
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "usage": self.usage.to_dict(),
            "limits": self.limits.to_dict() if self.limits else None,
        }


class UsageReader(Protocol):
    async def get_usage(self, user_id: str) -> ResourceUsageSnapshot: ...


class TierCatalog(Protocol):
    async def get_tier_limits(self, tier: Tier) -> TierLimits: ...


class StaticTierCatalog:
    """Tier limits straight from TIER_CATALOG."""

    async def get_tier_limits(self, tier: Tier) -> TierLimits:
        return TIER_CATALOG[Tier(tier)]


def _format_gb(num_bytes: int) -> str:
    value = num_bytes / GB
    return f"{value:.0f}" if value == int(value) else f"{value:.2f}"


def check_limits(usage: ResourceUsageSnapshot, limits: TierLimits) -> list[ResourceLimitError]:
    """Compare usage against limits. Pure; returns one error per violated resource."""
    errors: list[ResourceLimitError] = []

    if limits.storage_bytes is not None and usage.storage_bytes > limits.storage_bytes:
        errors.append(
            ResourceLimitError(
                resource="storage",
                usage=usage.storage_bytes,
                limit=limits.storage_bytes,
                message=(
                    f"Storage: {_format_gb(usage.storage_bytes)} GB used exceeds {limits.name} limit "
                    f"({_format_gb(limits.storage_bytes)} GB). Delete files to downgrade."
                ),
            )
        )

    if limits.project_limit is not None and usage.project_count > limits.project_limit:
        errors.append(
            ResourceLimitError(
                resource="projects",
                usage=usage.project_count,
                limit=limits.project_limit,
                message=(
                    f"Projects: {usage.project_count} exceeds {limits.name} limit "
                    f"({limits.project_limit}). Delete or archive projects to downgrade."
                ),
            )
        )

    if limits.collection_limit is not None and usage.collection_count > limits.collection_limit:
        errors.append(
            ResourceLimitError(
                resource="collections",
                usage=usage.collection_count,
                limit=limits.collection_limit,
                message=(
                    f"Collections: {usage.collection_count} exceeds {limits.name} limit "
                    f"({limits.collection_limit}). Delete collections to downgrade."
                ),
            )
        )

    return errors


class TierTransitionValidator:
    """Checks whether moving a user to a lower tier is safe given live usage."""

    def __init__(self, tier_catalog: TierCatalog, usage_reader: UsageReader):
        self.tier_catalog = tier_catalog
        self.usage_reader = usage_reader

    async def validate_downgrade(self, user_id: str, target_tier: Tier | str) -> DowngradeValidation:
        target = Tier(target_tier)
        limits = await self.tier_catalog.get_tier_limits(target)
        usage = await self.usage_reader.get_usage(user_id)

        errors = check_limits(usage, limits)
        if errors:
            logger.info(
                "downgrade_blocked",
                user_id=user_id,
                target_tier=target.value,
                resources=[e.resource for e in errors],
            )

        return DowngradeValidation(
            target_tier=target,
            valid=not errors,
            errors=errors,
            usage=usage,
            limits=limits,
        )
