"""Webhook intake, one route per provider.

Signatures cover the exact bytes on the wire, so every route reads the raw
body and hands it on untouched.
"""

from functools import lru_cache

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from reconciler.domain.events import ProviderName
from reconciler.providers.registry import EventNormalizer
from reconciler.services.dispatcher import WebhookDispatcher

router = APIRouter()


@lru_cache
def get_event_normalizer() -> EventNormalizer:
    return EventNormalizer()


def get_webhook_dispatcher(normalizer: EventNormalizer = Depends(get_event_normalizer)) -> WebhookDispatcher:
    return WebhookDispatcher(normalizer=normalizer)


async def _receive(provider: ProviderName, request: Request, dispatcher: WebhookDispatcher) -> JSONResponse:
    body = await request.body()
    result = await dispatcher.handle(provider, body, request.headers)
    return JSONResponse(status_code=result.status_code, content=result.body())


@router.post("/stripe")
async def stripe_webhook(request: Request, dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher)):
    return await _receive(ProviderName.STRIPE, request, dispatcher)


@router.post("/paypal")
async def paypal_webhook(request: Request, dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher)):
    return await _receive(ProviderName.PAYPAL, request, dispatcher)


@router.post("/paystack")
async def paystack_webhook(request: Request, dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher)):
    return await _receive(ProviderName.PAYSTACK, request, dispatcher)


@router.post("/flutterwave")
async def flutterwave_webhook(request: Request, dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher)):
    return await _receive(ProviderName.FLUTTERWAVE, request, dispatcher)
