"""Checkout and payment-return REST API routes.

Routes:
    POST   /api/v1/payments/intents   Start a payment for a listing or accepted offer
    GET    /api/v1/payments/return    Browser redirect after payment; settles if paid
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from marketplace_escrow.api.deps import get_db_session, get_materializer, get_payment_gateway
from marketplace_escrow.domain.enums import SettlementTrigger
from marketplace_escrow.domain.gateway_protocol import PaymentGateway  # noqa: TC001
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.payments import (
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    PaymentReturnResponse,
)
from marketplace_escrow.services.checkout_service import CheckoutService
from marketplace_escrow.services.settlement_service import SettlementMaterializer  # noqa: TC001

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post(
    "/intents",
    response_model=PaymentIntentResponse,
    status_code=201,
    summary="Create a payment intent",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentIntentResponse:
    """Compute the fee split and open a processor payment intent.

    The seller must have a fully set up payout account.
    """
    record = await CheckoutService(session, gateway).create_payment_intent(
        listing_id=request.listing_id,
        buyer_id=request.buyer_id,
        offer_id=request.offer_id,
        buyer_email=request.buyer_email,
    )
    return PaymentIntentResponse(
        payment_intent_id=record.id,
        client_secret=record.client_secret,
        amount=record.amount,
        platform_fee=record.platform_fee,
        seller_receives=record.seller_receives,
        currency=record.currency,
    )


@router.get(
    "/return",
    response_model=PaymentReturnResponse,
    summary="Payment return (redirect fallback)",
    description=(
        "Called when the buyer's browser comes back from the payment page. "
        "Settles the payment if the processor reports it succeeded; safe to "
        "race the webhook."
    ),
)
async def payment_return(
    payment_intent: str = Query(..., min_length=1, description="Processor payment intent id"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    materializer: SettlementMaterializer = Depends(get_materializer),
) -> PaymentReturnResponse:
    intent_status = await gateway.get_intent_status(payment_intent)
    if intent_status != "succeeded":
        logger.info(
            "payment_return.not_succeeded",
            payment_intent_id=payment_intent,
            intent_status=intent_status,
        )
        return PaymentReturnResponse(
            payment_intent_id=payment_intent,
            intent_status=intent_status,
            settled=False,
        )

    result = await materializer.settle(payment_intent, trigger=SettlementTrigger.REDIRECT)
    return PaymentReturnResponse(
        payment_intent_id=payment_intent,
        intent_status=intent_status,
        settled=True,
        transaction_id=result.transaction.id,
        duplicate_refunded=result.duplicate_refunded,
    )
