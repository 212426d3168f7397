"""Subscription reads (current, history, usage), downgrade pre-check and user-initiated cancellation."""

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select

from reconciler.core.exceptions import SubscriptionNotFound
from reconciler.db.base import get_session_factory
from reconciler.db.models.subscription_history import SubscriptionHistory
from reconciler.domain.events import Tier
from reconciler.domain.state_machine import SubscriptionStateMachine
from reconciler.domain.tiers import FREE_TIER, TierTransitionValidator
from reconciler.services.cancellation import CancellationService
from reconciler.services.usage import build_tier_validator, usage_summary

logger = structlog.get_logger(__name__)

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class CancelRequest(BaseModel):
    force: bool = False  # administrative override of the usage check
    immediate: bool = False


# ── Dependencies ────────────────────────────────────────────────────


def get_tier_validator() -> TierTransitionValidator:
    return build_tier_validator(get_session_factory())


def get_cancellation_service() -> CancellationService:
    return CancellationService()


# ── Routes ──────────────────────────────────────────────────────────


@router.get("/{user_id}")
async def get_subscription(user_id: str):
    async with get_session_factory()() as session:
        sub = await SubscriptionStateMachine().get_open_for_user(session, user_id, lock=False)
    if sub is None:
        raise SubscriptionNotFound(f"No open subscription for user {user_id}")
    return sub.to_dict()


@router.get("/{user_id}/history")
async def get_history(user_id: str, limit: int = Query(20, ge=1, le=100)):
    """Newest first."""
    async with get_session_factory()() as session:
        result = await session.execute(
            select(SubscriptionHistory)
            .where(SubscriptionHistory.user_id == user_id)
            .order_by(SubscriptionHistory.created_at.desc(), SubscriptionHistory.id.desc())
            .limit(limit)
        )
        rows = result.scalars().all()
    return {"data": [row.to_dict() for row in rows]}


@router.get("/{user_id}/usage")
async def get_usage(user_id: str):
    """Usage against the limits of the user's current tier (the free tier without a subscription)."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        sub = await SubscriptionStateMachine().get_open_for_user(session, user_id, lock=False)
    tier = Tier(sub.tier) if sub is not None else FREE_TIER
    return await usage_summary(session_factory, user_id, tier)


@router.get("/{user_id}/downgrade-check")
async def downgrade_check(
    user_id: str,
    target_tier: Tier,
    validator: TierTransitionValidator = Depends(get_tier_validator),
):
    validation = await validator.validate_downgrade(user_id, target_tier)
    return validation.to_dict()


@router.post("/{user_id}/cancel")
async def cancel_subscription(
    user_id: str,
    request: CancelRequest | None = None,
    service: CancellationService = Depends(get_cancellation_service),
):
    request = request or CancelRequest()
    if request.force:
        logger.warning("forced_cancellation_requested", user_id=user_id)
    result = await service.cancel(user_id, force=request.force, immediate=request.immediate)
    return result.to_dict()
