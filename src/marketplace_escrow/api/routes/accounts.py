"""Seller payout account REST API routes.

Routes:
    POST   /api/v1/accounts/{user_id}/onboard   Create (or resync) the payout account
    GET    /api/v1/accounts/{user_id}           Cached account status
    POST   /api/v1/accounts/{user_id}/resync    Refresh the cache from the processor
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from marketplace_escrow.api.deps import get_db_session, get_payment_gateway
from marketplace_escrow.domain.gateway_protocol import PaymentGateway  # noqa: TC001
from marketplace_escrow.schemas.payments import ConnectedAccountResponse, OnboardRequest
from marketplace_escrow.services.account_service import ConnectedAccountService

router = APIRouter(prefix="/api/v1/accounts", tags=["Accounts"])


@router.post(
    "/{user_id}/onboard",
    response_model=ConnectedAccountResponse,
    summary="Onboard a seller for payouts",
)
async def onboard_seller(
    user_id: str,
    request: OnboardRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> ConnectedAccountResponse:
    account = await ConnectedAccountService(session, gateway).onboard_seller(
        user_id, email=request.email if request is not None else None
    )
    return ConnectedAccountResponse.model_validate(account)


@router.get(
    "/{user_id}",
    response_model=ConnectedAccountResponse,
    summary="Get cached payout account status",
)
async def get_account(
    user_id: str,
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> ConnectedAccountResponse:
    account = await ConnectedAccountService(session, gateway).get_status(user_id)
    return ConnectedAccountResponse.model_validate(account)


@router.post(
    "/{user_id}/resync",
    response_model=ConnectedAccountResponse,
    summary="Refresh payout account status from the processor",
)
async def resync_account(
    user_id: str,
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> ConnectedAccountResponse:
    account = await ConnectedAccountService(session, gateway).resync(user_id)
    return ConnectedAccountResponse.model_validate(account)
