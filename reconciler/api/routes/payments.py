"""Synchronous payment routes. Retries must reuse the same Idempotency-Key."""

from fastapi import APIRouter, Header
from pydantic import BaseModel, Field

from reconciler.db.redis import get_redis
from reconciler.domain.events import ProviderName
from reconciler.services.currency import CurrencyConversionService
from reconciler.services.gateways import ChargeRequest, PaymentResult, get_gateway
from reconciler.services.payment_service import PaymentService, select_provider

router = APIRouter()


class RefundRequest(BaseModel):
    amount: int | None = Field(default=None, gt=0)  # smallest unit; omit for a full refund
    currency: str | None = None


def build_payment_service(provider: str | ProviderName) -> PaymentService:
    redis = get_redis()
    return PaymentService(get_gateway(provider), CurrencyConversionService(redis), redis)


@router.post("/charge", response_model=PaymentResult)
async def charge(request: ChargeRequest, idempotency_key: str | None = Header(default=None)):
    provider = request.provider or select_provider(request.currency, request.country)
    service = build_payment_service(provider)
    return await service.charge(request, idempotency_key=idempotency_key)


@router.post("/{provider}/{transaction_id}/refund", response_model=PaymentResult)
async def refund(
    provider: str,
    transaction_id: str,
    request: RefundRequest | None = None,
    idempotency_key: str | None = Header(default=None),
):
    request = request or RefundRequest()
    service = build_payment_service(provider)
    return await service.refund(transaction_id, request.amount, request.currency, idempotency_key=idempotency_key)


@router.get("/{provider}/{transaction_id}", response_model=PaymentResult)
async def payment_status(provider: str, transaction_id: str):
    return await build_payment_service(provider).get_payment_status(transaction_id)
