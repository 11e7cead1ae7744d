"""Escrow transaction REST API routes.

Routes:
    GET    /api/v1/transactions?user_id=&role=     A user's purchases and sales
    POST   /api/v1/transactions/release-due       Release every transaction past its hold
    GET    /api/v1/transactions/{id}              Get transaction details
    GET    /api/v1/transactions/{id}/events       Event log (buyer or seller only)
    POST   /api/v1/transactions/{id}/release      Buyer confirms receipt, releases funds
    POST   /api/v1/transactions/{id}/refund-request  Buyer or seller asks for a refund
    POST   /api/v1/transactions/{id}/refund       Seller refunds the buyer
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime
from typing import Literal

from fastapi import APIRouter, Depends

from marketplace_escrow.api.deps import get_release_service, get_transaction_service
from marketplace_escrow.schemas.payments import (
    ProcessRefundRequest,
    RefundRequestBody,
    ReleaseDueResponse,
    ReleaseRequest,
    TransactionEventResponse,
    TransactionResponse,
)
from marketplace_escrow.services.release_service import ReleaseService  # noqa: TC001
from marketplace_escrow.services.transaction_service import TransactionService  # noqa: TC001

router = APIRouter(prefix="/api/v1/transactions", tags=["Transactions"])


# ---------------------------------------------------------------------------
# Collection routes (declared before /{transaction_id})
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[TransactionResponse],
    summary="List a user's transactions",
)
async def list_transactions(
    user_id: str,
    role: Literal["buyer", "seller"] | None = None,
    svc: TransactionService = Depends(get_transaction_service),
) -> list[TransactionResponse]:
    """Purchases and sales of the user, newest first; role narrows to one side."""
    txns = await svc.list_for_user(user_id, role)
    return [TransactionResponse.model_validate(t) for t in txns]


@router.post(
    "/release-due",
    response_model=ReleaseDueResponse,
    summary="Release funds for every transaction past its escrow hold",
    description="Intended to be called by a scheduler.",
)
async def release_due(
    release_service: ReleaseService = Depends(get_release_service),
) -> ReleaseDueResponse:
    released = await release_service.release_due()
    return ReleaseDueResponse(
        released_count=len(released),
        released_transaction_ids=released,
    )


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get transaction details",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    svc: TransactionService = Depends(get_transaction_service),
) -> TransactionResponse:
    txn = await svc.get_transaction(transaction_id)
    return TransactionResponse.model_validate(txn)


@router.get(
    "/{transaction_id}/events",
    response_model=list[TransactionEventResponse],
    summary="Get the transaction event log",
)
async def get_transaction_events(
    transaction_id: uuid.UUID,
    user_id: str,
    svc: TransactionService = Depends(get_transaction_service),
) -> list[TransactionEventResponse]:
    events = await svc.get_events(transaction_id, user_id)
    return [TransactionEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Release and refunds
# ---------------------------------------------------------------------------


@router.post(
    "/{transaction_id}/release",
    response_model=TransactionResponse,
    summary="Release escrowed funds to the seller",
)
async def release_transaction(
    transaction_id: uuid.UUID,
    request: ReleaseRequest,
    release_service: ReleaseService = Depends(get_release_service),
) -> TransactionResponse:
    txn = await release_service.release(transaction_id, request.actor_id)
    return TransactionResponse.model_validate(txn)


@router.post(
    "/{transaction_id}/refund-request",
    response_model=TransactionEventResponse,
    status_code=201,
    summary="Ask for a refund",
)
async def request_refund(
    transaction_id: uuid.UUID,
    request: RefundRequestBody,
    release_service: ReleaseService = Depends(get_release_service),
) -> TransactionEventResponse:
    """Record the request on the event log and notify the other party."""
    event = await release_service.request_refund(
        transaction_id, request.actor_id, request.reason, amount=request.amount
    )
    return TransactionEventResponse.model_validate(event)


@router.post(
    "/{transaction_id}/refund",
    response_model=TransactionResponse,
    summary="Refund the buyer",
)
async def process_refund(
    transaction_id: uuid.UUID,
    request: ProcessRefundRequest,
    release_service: ReleaseService = Depends(get_release_service),
) -> TransactionResponse:
    """Seller only. Without an amount, everything not yet refunded is returned."""
    txn = await release_service.process_refund(
        transaction_id, request.actor_id, amount=request.amount
    )
    return TransactionResponse.model_validate(txn)
