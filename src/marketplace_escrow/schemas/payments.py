"""Pydantic schemas for checkout, transactions, notifications, payout accounts and health."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class CreatePaymentIntentRequest(BaseModel):
    """Request body for starting a payment on a listing."""

    listing_id: uuid.UUID
    buyer_id: str = Field(..., min_length=1, max_length=64)
    offer_id: uuid.UUID | None = Field(
        default=None,
        description="Accepted offer to pay; omit to pay the listing price",
    )
    buyer_email: str | None = Field(default=None, max_length=320)


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    client_secret: str | None
    amount: int
    platform_fee: int
    seller_receives: int
    currency: str


class PaymentReturnResponse(BaseModel):
    """Result of the browser-redirect settlement fallback."""

    payment_intent_id: str
    intent_status: str
    settled: bool
    transaction_id: uuid.UUID | None = None
    duplicate_refunded: bool = Field(
        default=False,
        description="The listing was already paid for; this payment was refunded",
    )


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    payment_intent_id: str
    listing_id: uuid.UUID
    offer_id: uuid.UUID | None = None
    buyer_id: str
    seller_id: str
    final_price: int
    platform_fee: int
    seller_receives: int
    refunded_amount: int
    status: str
    escrow_release_date: datetime
    escrow_released_at: datetime | None = None
    transfer_id: str | None = None
    completed_at: datetime | None = None
    created_at: datetime


class TransactionEventResponse(BaseModel):
    """A single entry in the transaction's event log."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_id: uuid.UUID
    event_type: str
    old_status: str | None = None
    new_status: str
    actor_id: str
    payload: dict | None = None
    created_at: datetime


class ReleaseRequest(BaseModel):
    actor_id: str = Field(..., min_length=1, max_length=64)


class ReleaseDueResponse(BaseModel):
    released_count: int
    released_transaction_ids: list[uuid.UUID]


class RefundRequestBody(BaseModel):
    """Request body for asking for a refund (buyer or seller)."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., min_length=1, max_length=2000)
    amount: int | None = Field(
        default=None,
        gt=0,
        description="Minor units to refund; omit for everything not yet refunded",
    )


class ProcessRefundRequest(BaseModel):
    """Request body for the seller issuing a refund."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    amount: int | None = Field(
        default=None,
        gt=0,
        description="Minor units to refund; omit for everything not yet refunded",
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    type: str
    title: str
    message: str
    link: str | None = None
    payload: dict | None = None
    is_read: bool
    created_at: datetime


# ---------------------------------------------------------------------------
# Payout accounts
# ---------------------------------------------------------------------------


class OnboardRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)


class ConnectedAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    processor_account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    fully_set_up: bool
    synced_at: datetime


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    payments: str = "unknown"
