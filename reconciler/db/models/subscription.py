"""Subscription model: the reconciled, provider-agnostic subscription record."""

import uuid

from sqlalchemy import Column, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.types import Uuid

from reconciler.db.base import Base, UTCDateTime, utcnow
from reconciler.domain.events import OPEN_STATUSES, SubscriptionStatus

_OPEN_STATUS_SQL = "status IN ({})".format(", ".join(f"'{s.value}'" for s in sorted(OPEN_STATUSES, key=lambda s: s.value)))


class Subscription(Base):
    """One row per provider subscription. Terminal rows are kept for history."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("provider", "external_subscription_id", name="uq_subscriptions_provider_external_id"),
        # At most one non-terminal subscription per user
        Index(
            "uq_subscriptions_user_open",
            "user_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_SQL),
            sqlite_where=text(_OPEN_STATUS_SQL),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)

    tier = Column(String(50), nullable=False)
    billing_cycle = Column(String(20), nullable=False)
    status = Column(String(50), nullable=False, default=SubscriptionStatus.ACTIVE.value)

    provider = Column(String(50), nullable=False)
    external_subscription_id = Column(String(255), nullable=False)
    customer_reference = Column(String(255), nullable=True, index=True)

    # Smallest currency unit, as charged by the provider
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    amount_usd = Column(Integer, nullable=True)

    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    canceled_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "tier": self.tier,
            "billing_cycle": self.billing_cycle,
            "status": self.status,
            "provider": self.provider,
            "external_subscription_id": self.external_subscription_id,
            "amount": self.amount,
            "currency": self.currency,
            "amount_usd": self.amount_usd,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
        }
