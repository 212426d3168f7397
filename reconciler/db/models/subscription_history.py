"""SubscriptionHistory model: append-only audit trail of subscription changes."""

from sqlalchemy import JSON, Column, ForeignKey, Integer, String, Text
from sqlalchemy.types import Uuid

from reconciler.db.base import Base, UTCDateTime, utcnow


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id"), nullable=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)

    # created | upgraded | downgraded | renewed | payment_failed | cancelled |
    # grace_started | reactivated | expired | superseded | updated
    action = Column(String(50), nullable=False)
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    from_tier = Column(String(50), nullable=True)
    to_tier = Column(String(50), nullable=True)
    billing_cycle = Column(String(20), nullable=True)
    amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    provider = Column(String(50), nullable=True)
    external_subscription_id = Column(String(255), nullable=True)
    event_id = Column(String(255), nullable=True)  # ledger event that caused the change, if any
    notes = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": str(self.subscription_id) if self.subscription_id else None,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "from_tier": self.from_tier,
            "to_tier": self.to_tier,
            "billing_cycle": self.billing_cycle,
            "amount": self.amount,
            "currency": self.currency,
            "provider": self.provider,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
