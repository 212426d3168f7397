import pytest

from reconciler.core.exceptions import (
    DuplicateEvent,
    InvalidTransition,
    LockUnavailable,
    NormalizationError,
    PayloadMalformed,
    PaymentInProgress,
    ProviderCommunicationFailure,
    ReconcilerError,
    ResourceLimitExceeded,
    SignatureInvalid,
    SubscriptionNotFound,
    UnknownSubscriptionReference,
    WebhookNotConfigured,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "exc,status",
    [
        (SignatureInvalid(), 400),
        (PayloadMalformed(), 400),
        (NormalizationError("missing user_id", field="user_id"), 400),
        (DuplicateEvent("stripe", "evt_1", 200), 200),
        (UnknownSubscriptionReference("paypal", "I-123"), 200),
        (ResourceLimitExceeded("free", errors=[], usage={}, limits={}), 422),
        (ProviderCommunicationFailure("paypal", "verify_webhook_signature"), 500),
        (WebhookNotConfigured("paystack"), 503),
        (LockUnavailable("stripe:sub_1", 10), 500),
        (PaymentInProgress(), 409),
        (SubscriptionNotFound(), 404),
        (InvalidTransition("canceled", "active"), 409),
    ],
)
def test_status_codes(exc: ReconcilerError, status: int) -> None:
    assert isinstance(exc, ReconcilerError)
    assert exc.status_code == status


def test_default_message_is_class_detail() -> None:
    assert str(SignatureInvalid()) == "Invalid signature"
    assert str(PaymentInProgress()) == PaymentInProgress.detail


def test_messages_name_the_context() -> None:
    assert "paypal" in str(ProviderCommunicationFailure("paypal", "oauth_token", "timeout"))
    assert "timeout" in str(ProviderCommunicationFailure("paypal", "oauth_token", "timeout"))
    assert str(InvalidTransition("canceled", "active")) == "Cannot move subscription from canceled to active"
    assert "10.0s" in str(LockUnavailable("stripe:sub_1", 10))


def test_resource_limit_carries_violations() -> None:
    errors = [{"resource": "storage", "current": 6, "limit": 5}]
    exc = ResourceLimitExceeded("free", errors=errors, usage={"storage_bytes": 6}, limits={"storage_bytes": 5})

    assert exc.errors == errors
    assert exc.usage == {"storage_bytes": 6}
    assert exc.limits == {"storage_bytes": 5}
    assert "1 resource limit(s)" in str(exc)
