"""Offer negotiation REST API routes.

Routes:
    POST   /api/v1/offers               Make an offer on a listing
    GET    /api/v1/offers?listing_id=   List offers on a listing
    POST   /api/v1/offers/expire        Expire every overdue pending offer
    GET    /api/v1/offers/{id}          Get offer details
    GET    /api/v1/offers/{id}/status   Lightweight status check
    GET    /api/v1/offers/{id}/events   Event log
    POST   /api/v1/offers/{id}/accept   Responder accepts
    POST   /api/v1/offers/{id}/reject   Responder rejects
    POST   /api/v1/offers/{id}/counter  Responder counters with new terms
    POST   /api/v1/offers/{id}/cancel   Maker withdraws
    POST   /api/v1/offers/{id}/extend   Maker re-opens an expired offer

Mutating routes commit the request session themselves and only then send
the notifications and emails the action queued.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from marketplace_escrow.api.deps import get_db_session, get_offer_service, get_sweeper
from marketplace_escrow.logging_config import get_logger
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
from marketplace_escrow.services.expiration_sweeper import ExpirationSweeper  # noqa: TC001
from marketplace_escrow.services.offer_service import OfferService

router = APIRouter(prefix="/api/v1/offers", tags=["Offers"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create / list
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=OfferResponse,
    status_code=201,
    summary="Make an offer on a listing",
)
async def create_offer(
    request: CreateOfferRequest,
    svc: OfferService = Depends(get_offer_service),
    session: AsyncSession = Depends(get_db_session),
) -> OfferResponse:
    """Create a pending offer. The listing must be active and not the buyer's own."""
    offer = await svc.create_offer(
        listing_id=request.listing_id,
        buyer_id=request.buyer_id,
        amount=request.amount,
        message=request.message,
        contingencies=request.contingencies,
        includes_transport=request.includes_transport,
        includes_inspection=request.includes_inspection,
        expires_in_days=request.expires_in_days,
        buyer_email=request.buyer_email,
    )
    await _commit_and_dispatch(session, svc)
    return OfferResponse.model_validate(offer)


@router.get(
    "",
    response_model=list[OfferResponse],
    summary="List offers on a listing",
)
async def list_offers(
    listing_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> list[OfferResponse]:
    offers = await OfferService(session).list_for_listing(listing_id)
    return [OfferResponse.model_validate(o) for o in offers]


# ---------------------------------------------------------------------------
# Expiration sweep (declared before /{offer_id} routes)
# ---------------------------------------------------------------------------


@router.post(
    "/expire",
    response_model=SweepResponse,
    summary="Expire overdue pending offers",
    description="Idempotent. Intended to be called by a scheduler.",
)
async def expire_offers(
    sweeper: ExpirationSweeper = Depends(get_sweeper),
) -> SweepResponse:
    result = await sweeper.sweep()
    return SweepResponse(
        expired_count=result.expired_count,
        expired_offer_ids=result.expired_offer_ids,
        buyer_ids=result.buyer_ids,
    )


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get(
    "/{offer_id}",
    response_model=OfferResponse,
    summary="Get offer details",
)
async def get_offer(
    offer_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> OfferResponse:
    offer = await OfferService(session).get_offer(offer_id)
    return OfferResponse.model_validate(offer)


@router.get(
    "/{offer_id}/status",
    response_model=OfferStatusResponse,
    summary="Get offer status",
)
async def get_offer_status(
    offer_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> OfferStatusResponse:
    """Current status plus the events that may be fired from it."""
    status = await OfferService(session).get_status(offer_id)
    return OfferStatusResponse(**status)


@router.get(
    "/{offer_id}/events",
    response_model=list[OfferEventResponse],
    summary="Get the offer event log",
)
async def get_offer_events(
    offer_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> list[OfferEventResponse]:
    events = await OfferService(session).get_events(offer_id)
    return [OfferEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Responder actions
# ---------------------------------------------------------------------------


@router.post(
    "/{offer_id}/accept",
    response_model=OfferResponse,
    summary="Accept an offer",
)
async def accept_offer(
    offer_id: uuid.UUID,
    request: RespondOfferRequest,
    svc: OfferService = Depends(get_offer_service),
    session: AsyncSession = Depends(get_db_session),
) -> OfferResponse:
    """Accept; the listing goes to pending and competing offers are rejected."""
    offer = await svc.accept_offer(
        offer_id, request.actor_id, message=request.message
    )
    await _commit_and_dispatch(session, svc)
    return OfferResponse.model_validate(offer)


@router.post(
    "/{offer_id}/reject",
    response_model=OfferResponse,
    summary="Reject an offer",
)
async def reject_offer(
    offer_id: uuid.UUID,
    request: RespondOfferRequest,
    svc: OfferService = Depends(get_offer_service),
    session: AsyncSession = Depends(get_db_session),
) -> OfferResponse:
    offer = await svc.reject_offer(
        offer_id, request.actor_id, message=request.message
    )
    await _commit_and_dispatch(session, svc)
    return OfferResponse.model_validate(offer)


@router.post(
    "/{offer_id}/counter",
    response_model=CounterOfferResponse,
    status_code=201,
    summary="Counter an offer",
)
async def counter_offer(
    offer_id: uuid.UUID,
    request: CounterOfferRequest,
    svc: OfferService = Depends(get_offer_service),
    session: AsyncSession = Depends(get_db_session),
) -> CounterOfferResponse:
    original, counter = await svc.counter_offer(
        offer_id,
        request.actor_id,
        amount=request.amount,
        message=request.message,
        expires_in_days=request.expires_in_days,
    )
    await _commit_and_dispatch(session, svc)
    return CounterOfferResponse(
        original=OfferResponse.model_validate(original),
        counter=OfferResponse.model_validate(counter),
    )


# ---------------------------------------------------------------------------
# Maker actions
# ---------------------------------------------------------------------------


@router.post(
    "/{offer_id}/cancel",
    response_model=OfferResponse,
    summary="Withdraw an offer",
)
async def cancel_offer(
    offer_id: uuid.UUID,
    request: CancelOfferRequest,
    svc: OfferService = Depends(get_offer_service),
    session: AsyncSession = Depends(get_db_session),
) -> OfferResponse:
    offer = await svc.cancel_offer(offer_id, request.actor_id)
    await _commit_and_dispatch(session, svc)
    return OfferResponse.model_validate(offer)


@router.post(
    "/{offer_id}/extend",
    response_model=OfferResponse,
    summary="Re-open an expired offer",
)
async def extend_offer(
    offer_id: uuid.UUID,
    request: ExtendOfferRequest,
    svc: OfferService = Depends(get_offer_service),
    session: AsyncSession = Depends(get_db_session),
) -> OfferResponse:
    offer = await svc.extend_offer(
        offer_id, request.actor_id, request.additional_days
    )
    await _commit_and_dispatch(session, svc)
    return OfferResponse.model_validate(offer)


async def _commit_and_dispatch(session: AsyncSession, svc: OfferService) -> None:
    await session.commit()
    await svc.dispatch_notifications()
