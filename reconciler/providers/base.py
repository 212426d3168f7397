"""PaymentProvider capability: signature verification plus normalization.

Each provider parses its webhook body into its own typed payload model
first, then maps that model onto a CanonicalEvent. The HTTP route picks the
provider; nothing downstream inspects payload shapes.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from reconciler.core.exceptions import NormalizationError, PayloadMalformed
from reconciler.domain.billing import from_timestamp
from reconciler.domain.events import BillingCycle, ProviderName, Tier

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def load_json_object(raw_body: bytes) -> dict[str, Any]:
    if not raw_body or not raw_body.strip():
        raise PayloadMalformed("Empty payload")
    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadMalformed("Payload is not valid JSON") from e
    if not isinstance(body, dict) or not body:
        raise PayloadMalformed("Payload must be a non-empty JSON object")
    return body


def validate_object(model: type[PayloadT], data: Any, what: str) -> PayloadT:
    """Validate a nested provider object, reporting shape errors as PayloadMalformed."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadMalformed(f"Malformed {what} object") from e


def parse_time(value: Any, field: str) -> datetime | None:
    try:
        return from_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise PayloadMalformed(f"Unparseable timestamp in {field}: {value!r}") from e


def checkout_metadata(raw: Mapping[str, Any] | None, *, required: bool = True) -> dict[str, Any]:
    """Extract and validate user_id/tier/billing_cycle from checkout metadata.

    Accepts ``user_uuid`` as an alias for ``user_id``. Unrecognized keys are
    carried through untouched.
    """
    raw = dict(raw or {})
    user_id = raw.get("user_id") or raw.get("user_uuid")
    tier = raw.get("tier")
    cycle = raw.get("billing_cycle")

    if required:
        for name, value in (("user_id", user_id), ("tier", tier), ("billing_cycle", cycle)):
            if not value:
                raise NormalizationError(f"Checkout metadata is missing {name}", field=name)

    metadata = {k: v for k, v in raw.items() if k != "user_uuid"}
    if user_id:
        metadata["user_id"] = str(user_id)
    if tier:
        try:
            metadata["tier"] = Tier(str(tier).lower()).value
        except ValueError:
            raise NormalizationError(f"Unknown tier in checkout metadata: {tier!r}", field="tier") from None
    if cycle:
        cycle = str(cycle).lower()
        cycle = {"yearly": "annual", "annually": "annual", "month": "monthly", "year": "annual"}.get(cycle, cycle)
        try:
            metadata["billing_cycle"] = BillingCycle(cycle).value
        except ValueError:
            raise NormalizationError(f"Unknown billing cycle in checkout metadata: {cycle!r}", field="billing_cycle") from None
    return metadata


def has_checkout_metadata(raw: Mapping[str, Any] | None) -> bool:
    return bool(raw) and bool(raw.get("user_id") or raw.get("user_uuid"))


class PaymentProvider(ABC, Generic[PayloadT]):
    """One payment provider's webhook capabilities."""

    name: ProviderName
    payload_model: type[PayloadT]

    @abstractmethod
    async def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Raise SignatureInvalid (or WebhookNotConfigured) unless the body is authentic."""

    def parse(self, raw_body: bytes) -> PayloadT:
        body = load_json_object(raw_body)
        try:
            return self.payload_model.model_validate(body)
        except ValidationError as e:
            raise PayloadMalformed(f"Payload does not match the {self.name.value} webhook shape") from e

    @abstractmethod
    def event_id(self, payload: PayloadT) -> str:
        """Provider event id, or a derived stable key for providers without one."""

    @abstractmethod
    def normalize(self, payload: PayloadT):
        """Map a parsed payload onto a CanonicalEvent."""

    async def enrich(self, event):
        """Fill in what the webhook body lacks from the provider's API. Runs outside the lock."""
        return event

    def normalize_raw(self, raw_body: bytes):
        return self.normalize(self.parse(raw_body))
