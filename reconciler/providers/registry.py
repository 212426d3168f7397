"""Provider lookup by name and the EventNormalizer front door."""

from reconciler.core.config import Settings, get_settings
from reconciler.core.exceptions import UnknownProvider
from reconciler.domain.events import CanonicalEvent, ProviderName
from reconciler.providers.base import PaymentProvider
from reconciler.providers.flutterwave import FlutterwaveProvider
from reconciler.providers.paypal import PayPalProvider
from reconciler.providers.paystack import PaystackProvider
from reconciler.providers.stripe import StripeProvider

PROVIDER_CLASSES: dict[ProviderName, type[PaymentProvider]] = {
    ProviderName.STRIPE: StripeProvider,
    ProviderName.PAYPAL: PayPalProvider,
    ProviderName.PAYSTACK: PaystackProvider,
    ProviderName.FLUTTERWAVE: FlutterwaveProvider,
}


def provider_name(name: str | ProviderName) -> ProviderName:
    try:
        return ProviderName(name)
    except ValueError:
        raise UnknownProvider(f"Unknown payment provider: {name}") from None


def get_provider(name: str | ProviderName, settings: Settings | None = None) -> PaymentProvider:
    return PROVIDER_CLASSES[provider_name(name)](settings or get_settings())


class EventNormalizer:
    """Maps a provider's raw webhook body onto a CanonicalEvent.

    Unknown event types come back as an ``unhandled`` event. Missing checkout
    metadata raises NormalizationError and a bad body raises PayloadMalformed.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._providers: dict[ProviderName, PaymentProvider] = {}

    def provider(self, name: str | ProviderName) -> PaymentProvider:
        key = provider_name(name)
        if key not in self._providers:
            self._providers[key] = get_provider(key, self.settings)
        return self._providers[key]

    def normalize(self, provider: str | ProviderName, raw_payload: bytes) -> CanonicalEvent:
        return self.provider(provider).normalize_raw(raw_payload)
