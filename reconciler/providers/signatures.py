"""Webhook signature checks for the HMAC-signed providers.

Every check works on the exact bytes received; re-serializing the JSON
would change them. All functions are pure and return a bool.
"""

import base64
import hashlib
import hmac

import stripe
import structlog

logger = structlog.get_logger(__name__)


def _hmac_digest(secret: str, message: bytes, digest: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, getattr(hashlib, digest)).digest()


def verify_hmac_signature(raw_body: bytes, signature: str | None, secret: str, digest: str = "sha256") -> bool:
    """Check an HMAC of the raw body, accepting a hex or base64 encoded signature."""
    if not signature or not secret:
        return False

    expected = _hmac_digest(secret, raw_body, digest)
    candidate = signature.strip().encode("utf-8")

    if hmac.compare_digest(expected.hex().encode("ascii"), candidate.lower()):
        return True
    return hmac.compare_digest(base64.b64encode(expected), candidate)


def verify_stripe_signature(raw_body: bytes, header: str | None, secret: str, tolerance: int = 300) -> bool:
    """Stripe signs "{timestamp}.{body}" with HMAC-SHA256 and sends ``t=...,v1=...``."""
    if not header or not secret:
        return False
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False

    try:
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.info("stripe_signature_rejected", reason=str(e))
        return False
    return True


def verify_paystack_signature(raw_body: bytes, signature: str | None, secret: str, digest: str = "sha512") -> bool:
    """Paystack signs the raw body with the account secret key (``x-paystack-signature``)."""
    return verify_hmac_signature(raw_body, signature, secret, digest)


def verify_flutterwave_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Flutterwave signs the raw body with HMAC-SHA256 (``flutterwave-signature``)."""
    return verify_hmac_signature(raw_body, signature, secret, "sha256")


def verify_flutterwave_hash(candidate: str | None, secret_hash: str) -> bool:
    """Shared-secret comparison for the in-body ``verif_hash`` fallback."""
    if not candidate or not secret_hash:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret_hash.encode("utf-8"))
