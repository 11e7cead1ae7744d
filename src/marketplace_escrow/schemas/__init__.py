"""Pydantic API schemas."""

from marketplace_escrow.schemas.offers import (
    CancelOfferRequest,
    CounterOfferRequest,
    CounterOfferResponse,
    CreateOfferRequest,
    ExtendOfferRequest,
    OfferEventResponse,
    OfferResponse,
    OfferStatusResponse,
    RespondOfferRequest,
    SweepResponse,
)
from marketplace_escrow.schemas.payments import (
    ConnectedAccountResponse,
    CreatePaymentIntentRequest,
    HealthResponse,
    OnboardRequest,
    PaymentIntentResponse,
    PaymentReturnResponse,
    ReleaseDueResponse,
    ReleaseRequest,
    TransactionResponse,
    WebhookResponse,
)

__all__ = [
    "CancelOfferRequest",
    "CounterOfferRequest",
    "CounterOfferResponse",
    "CreateOfferRequest",
    "ExtendOfferRequest",
    "OfferEventResponse",
    "OfferResponse",
    "OfferStatusResponse",
    "RespondOfferRequest",
    "SweepResponse",
    "ConnectedAccountResponse",
    "CreatePaymentIntentRequest",
    "HealthResponse",
    "OnboardRequest",
    "PaymentIntentResponse",
    "PaymentReturnResponse",
    "ReleaseDueResponse",
    "ReleaseRequest",
    "TransactionResponse",
    "WebhookResponse",
]
