"""ProcessedWebhookEvent model: the idempotency ledger."""

from sqlalchemy import Column, Integer, String, Text, UniqueConstraint

from reconciler.db.base import Base, UTCDateTime, utcnow


class ProcessedWebhookEvent(Base):
    """Tracks every (provider, event id) pair that reached the ledger, with its outcome."""

    __tablename__ = "processed_webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_processed_webhook_events_provider_event"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)

    outcome = Column(String(20), nullable=False)  # processed | failed
    event_type = Column(String(100), nullable=True)  # canonical type
    provider_event_type = Column(String(255), nullable=True)
    reference = Column(String(255), nullable=True, index=True)
    http_status = Column(Integer, nullable=False, default=200)
    error_message = Column(Text, nullable=True)

    processed_at = Column(UTCDateTime, nullable=False, default=utcnow)
