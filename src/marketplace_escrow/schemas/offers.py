"""Pydantic schemas for the Offer API.

Separate from the ORM models to keep the API and database layers apart.
Money is always integer minor units (cents) on the wire.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateOfferRequest(BaseModel):
    """Request body for making an offer on a listing."""

    listing_id: uuid.UUID
    buyer_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(
        ...,
        gt=0,
        description="Offered price in minor units (cents)",
        examples=[500000],
    )
    message: str | None = Field(default=None, max_length=2000)
    contingencies: list[str] | None = Field(
        default=None,
        description="Free-form conditions, e.g. pre-purchase vet exam",
        examples=[["Subject to pre-purchase exam"]],
    )
    includes_transport: bool = False
    includes_inspection: bool = False
    expires_in_days: int | None = Field(
        default=None,
        ge=1,
        description="Days until the offer expires (defaults to the configured value)",
    )
    buyer_email: str | None = Field(
        default=None,
        max_length=320,
        description="Where offer updates are emailed; omit to rely on in-app notifications",
    )


class RespondOfferRequest(BaseModel):
    """Request body for accept / reject."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    message: str | None = Field(default=None, max_length=2000)


class CounterOfferRequest(BaseModel):
    actor_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0, description="Counter price in minor units")
    message: str | None = Field(default=None, max_length=2000)
    expires_in_days: int | None = Field(default=None, ge=1)


class CancelOfferRequest(BaseModel):
    actor_id: str = Field(..., min_length=1, max_length=64)


class ExtendOfferRequest(BaseModel):
    """Request body for re-opening an expired offer."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    additional_days: int = Field(..., description="Days to add from now")


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class OfferResponse(BaseModel):
    """Full offer details."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    listing_id: uuid.UUID
    buyer_id: str
    seller_id: str
    amount: int
    message: str | None = None
    contingencies: list[str] | None = None
    includes_transport: bool
    includes_inspection: bool
    offer_type: str
    parent_offer_id: uuid.UUID | None = None
    status: str
    response_message: str | None = None
    responded_at: datetime | None = None
    created_at: datetime
    expires_at: datetime
    updated_at: datetime


class CounterOfferResponse(BaseModel):
    original: OfferResponse
    counter: OfferResponse


class OfferEventResponse(BaseModel):
    """A single entry in the offer's event log."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    offer_id: uuid.UUID
    event_type: str
    actor_id: str
    payload: dict | None = None
    created_at: datetime


class OfferStatusResponse(BaseModel):
    """Lightweight status check with allowed next events."""

    offer_id: uuid.UUID
    status: str
    allowed_events: list[str] = Field(
        description="Events that can be fired from the current state",
    )
    expires_at: datetime
    updated_at: datetime


class SweepResponse(BaseModel):
    expired_count: int
    expired_offer_ids: list[uuid.UUID]
    buyer_ids: list[str]
