class ReconcilerError(Exception):
    """Base exception for the subscription reconciler."""

    status_code: int = 500
    detail: str = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.detail)


class WebhookNotConfigured(ReconcilerError):
    """Raised when a provider's webhook secret is missing. The endpoint fails closed."""

    status_code = 503
    detail = "Webhook endpoint is not configured"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} webhook endpoint is not configured")


class SignatureInvalid(ReconcilerError):
    """Raised when a webhook payload was not signed by the claimed provider."""

    status_code = 400
    detail = "Invalid signature"


class PayloadMalformed(ReconcilerError):
    """Raised when a webhook body is empty, not JSON, or not the provider's shape."""

    status_code = 400
    detail = "Invalid payload"


class NormalizationError(ReconcilerError):
    """Raised when a known event lacks metadata required to apply it."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class DuplicateEvent(ReconcilerError):
    """A (provider, event id) pair that was already processed. Not a failure."""

    status_code = 200

    def __init__(self, provider: str, event_id: str, http_status: int):
        self.provider = provider
        self.event_id = event_id
        self.http_status = http_status
        super().__init__(f"Event {provider}:{event_id} already processed")


class UnknownSubscriptionReference(ReconcilerError):
    """An event referenced an external subscription id this system never created."""

    status_code = 200

    def __init__(self, provider: str, reference: str | None):
        self.provider = provider
        self.reference = reference
        super().__init__(f"Unknown {provider} subscription reference: {reference}")


class ResourceLimitExceeded(ReconcilerError):
    """Raised when a downgrade or cancellation would leave usage above the target tier's limits."""

    status_code = 422
    detail = "Current usage exceeds the target tier's limits"

    def __init__(self, target_tier: str, errors: list, usage: dict, limits: dict):
        self.target_tier = target_tier
        self.errors = errors
        self.usage = usage
        self.limits = limits
        super().__init__(f"Cannot move to {target_tier}: {len(errors)} resource limit(s) exceeded")


class ProviderCommunicationFailure(ReconcilerError):
    """Raised when a call to a payment provider's API fails. Retryable."""

    status_code = 500
    detail = "Provider communication failure"

    def __init__(self, provider: str, operation: str, reason: str = ""):
        self.provider = provider
        self.operation = operation
        self.reason = reason
        super().__init__(f"{provider} {operation} failed: {reason}" if reason else f"{provider} {operation} failed")


class LockUnavailable(ReconcilerError):
    """Raised when the per-subscription lock could not be acquired in time. Retryable."""

    status_code = 500
    detail = "Subscription is busy"

    def __init__(self, key: str, waited: float):
        self.key = key
        self.waited = waited
        super().__init__(f"Lock {key} not acquired after {waited:.1f}s")


class WebhookProcessingError(ReconcilerError):
    """Raised when processing fails and the provider should redeliver."""

    status_code = 500
    detail = "Webhook processing failed"


class PaymentInProgress(ReconcilerError):
    """Raised when a charge with the same idempotency key is already in flight."""

    status_code = 409
    detail = "A payment with this idempotency key is already in progress"


class SubscriptionNotFound(ReconcilerError):
    """Raised when a user has no open subscription."""

    status_code = 404
    detail = "No active subscription"


class InvalidTransition(ReconcilerError):
    """Raised when a user-initiated change is not allowed from the subscription's status."""

    status_code = 409

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move subscription from {current} to {target}")


class UnknownProvider(ReconcilerError):
    """Raised when a route or request names a payment provider that is not supported."""

    status_code = 404
    detail = "Unknown payment provider"


class ProviderNotConfigured(ReconcilerError):
    """Raised when a payment provider's API credentials are missing."""

    status_code = 503
    detail = "Payment provider is not configured"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} API credentials are not configured")
