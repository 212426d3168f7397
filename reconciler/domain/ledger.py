"""IdempotencyLedger: at-most-once effective processing of webhook events.

``try_begin`` inserts the (provider, event_id) row as the first statement
of the transaction that applies the event. The unique constraint decides
races: the loser gets an IntegrityError and reads the winner's row instead.
``commit`` writes the outcome into the same row and commits, so the row
and the state changes it vouches for become visible together. Abandoning
processing before ``commit`` leaves nothing behind.
"""

from dataclasses import dataclass
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.exceptions import WebhookProcessingError
from reconciler.db.models.webhook_event import ProcessedWebhookEvent
from reconciler.domain.events import CanonicalEvent

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 1000


class LedgerOutcome(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class Fresh:
    """First sighting of this event. ``entry`` is pending in the caller's session."""

    entry: ProcessedWebhookEvent


@dataclass
class AlreadyProcessed:
    """A prior delivery of this event already reached the ledger."""

    prior: ProcessedWebhookEvent

    @property
    def http_status(self) -> int:
        return self.prior.http_status

    @property
    def outcome(self) -> LedgerOutcome:
        return LedgerOutcome(self.prior.outcome)


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_LENGTH]


class IdempotencyLedger:
    BEGIN_ATTEMPTS = 2

    async def get(self, session: AsyncSession, provider: str, event_id: str) -> ProcessedWebhookEvent | None:
        result = await session.execute(
            select(ProcessedWebhookEvent).where(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def try_begin(self, session: AsyncSession, provider: str, event_id: str) -> Fresh | AlreadyProcessed:
        """Claim (provider, event_id) with a unique-constraint-backed insert.

        Must be the first write in ``session``: a duplicate rolls the session back.
        """
        for _ in range(self.BEGIN_ATTEMPTS):
            entry = ProcessedWebhookEvent(
                provider=provider,
                event_id=event_id,
                outcome=LedgerOutcome.PROCESSED.value,
            )
            session.add(entry)
            try:
                await session.flush()
                return Fresh(entry)
            except IntegrityError:
                await session.rollback()

            prior = await self.get(session, provider, event_id)
            if prior is not None:
                logger.info(
                    "webhook_duplicate_event",
                    provider=provider,
                    event_id=event_id,
                    prior_outcome=prior.outcome,
                    prior_status=prior.http_status,
                )
                return AlreadyProcessed(prior)
            # The conflicting row vanished (its transaction rolled back); claim again

        raise WebhookProcessingError(f"Could not claim ledger entry {provider}:{event_id}")

    async def commit(
        self,
        session: AsyncSession,
        entry: ProcessedWebhookEvent,
        event: CanonicalEvent,
        *,
        outcome: LedgerOutcome = LedgerOutcome.PROCESSED,
        http_status: int = 200,
        error: str | None = None,
    ) -> ProcessedWebhookEvent:
        """Record the final outcome and commit the transaction."""
        entry.outcome = outcome.value
        entry.event_type = event.event_type.value
        entry.provider_event_type = event.provider_event_type
        entry.reference = event.lock_reference
        entry.http_status = http_status
        entry.error_message = _truncate(error)
        await session.commit()
        return entry

    async def record(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: str,
        event_id: str,
        *,
        outcome: LedgerOutcome,
        http_status: int,
        event_type: str | None = None,
        provider_event_type: str | None = None,
        reference: str | None = None,
        error: str | None = None,
    ) -> ProcessedWebhookEvent | None:
        """Insert a finished row in its own transaction.

        Used where no state change accompanies the row: unhandled event types,
        and failures under a 200 policy. Returns None if another delivery
        already recorded the event.
        """
        async with session_factory() as session:
            entry = ProcessedWebhookEvent(
                provider=provider,
                event_id=event_id,
                outcome=outcome.value,
                event_type=event_type,
                provider_event_type=provider_event_type,
                reference=reference,
                http_status=http_status,
                error_message=_truncate(error),
            )
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return entry

    async def record_failure(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: str,
        event_id: str,
        *,
        http_status: int,
        error: str,
        event: CanonicalEvent | None = None,
    ) -> ProcessedWebhookEvent | None:
        return await self.record(
            session_factory,
            provider,
            event_id,
            outcome=LedgerOutcome.FAILED,
            http_status=http_status,
            event_type=event.event_type.value if event else None,
            provider_event_type=event.provider_event_type if event else None,
            reference=event.lock_reference if event else None,
            error=error,
        )
