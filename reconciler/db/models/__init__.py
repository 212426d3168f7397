"""Re-export all models so Base.metadata sees them."""

from reconciler.db.models.plan_tier import PlanTier
from reconciler.db.models.resource_usage import ResourceUsage
from reconciler.db.models.subscription import Subscription
from reconciler.db.models.subscription_history import SubscriptionHistory
from reconciler.db.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "PlanTier",
    "ProcessedWebhookEvent",
    "ResourceUsage",
    "Subscription",
    "SubscriptionHistory",
]
