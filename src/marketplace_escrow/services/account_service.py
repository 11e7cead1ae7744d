"""Connected-account status cache.

The payment processor is authoritative for whether a seller can be paid.
The connected_accounts table is a mirror refreshed on onboarding, by the
account.updated webhook, and by an explicit resync. Checkout trusts a
positive cached answer and resyncs once before trusting a negative one.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.domain.exceptions import (
    ConnectedAccountNotFoundError,
    SellerPayoutNotReadyError,
)
from marketplace_escrow.infrastructure.database.repositories import ConnectedAccountRepository
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.gateway_protocol import AccountStatus, PaymentGateway
    from marketplace_escrow.infrastructure.database.orm_models import ConnectedAccount

logger = get_logger(__name__)


class ConnectedAccountService:
    def __init__(self, session: AsyncSession, gateway: PaymentGateway) -> None:
        self._repo = ConnectedAccountRepository(session)
        self._gateway = gateway

    async def onboard_seller(self, user_id: str, email: str | None = None) -> ConnectedAccount:
        """Get or create the seller's processor account and cache its flags."""
        existing = await self._repo.get_by_user_id(user_id)
        if existing is not None:
            return await self.resync(user_id, email=email)

        status = await self._gateway.create_account(email=email)
        account = await self._repo.save_status(user_id, status, email=email)
        logger.info(
            "account.onboarded",
            user_id=user_id,
            account_id=status.account_id,
            fully_set_up=status.fully_set_up,
        )
        return account

    async def get_status(self, user_id: str) -> ConnectedAccount:
        account = await self._repo.get_by_user_id(user_id)
        if account is None:
            raise ConnectedAccountNotFoundError(user_id)
        return account

    async def is_fully_set_up(self, user_id: str) -> bool:
        account = await self._repo.get_by_user_id(user_id)
        return account is not None and account.fully_set_up

    async def resync(self, user_id: str, email: str | None = None) -> ConnectedAccount:
        """Re-fetch the flags from the processor and overwrite the cache."""
        account = await self.get_status(user_id)
        status = await self._gateway.retrieve_account(account.processor_account_id)
        account = await self._repo.save_status(
            user_id, status, synced_at=datetime.now(UTC), email=email
        )
        logger.info(
            "account.resynced",
            user_id=user_id,
            account_id=status.account_id,
            fully_set_up=status.fully_set_up,
        )
        return account

    async def apply_processor_update(self, status: AccountStatus) -> ConnectedAccount | None:
        """Apply an account.updated webhook. Unknown accounts are ignored."""
        account = await self._repo.get_by_processor_account_id(status.account_id)
        if account is None:
            logger.warning("account.update_unknown", account_id=status.account_id)
            return None
        account = await self._repo.save_status(account.user_id, status)
        logger.info(
            "account.updated",
            user_id=account.user_id,
            account_id=status.account_id,
            fully_set_up=status.fully_set_up,
        )
        return account

    async def ensure_can_receive_payments(self, seller_id: str) -> ConnectedAccount:
        """Raise SellerPayoutNotReadyError unless the seller can be paid out."""
        account = await self._repo.get_by_user_id(seller_id)
        if account is None:
            raise SellerPayoutNotReadyError(seller_id)
        if account.fully_set_up:
            return account

        # the cache may lag the processor; ask once before refusing
        account = await self.resync(seller_id)
        if not account.fully_set_up:
            logger.warning("account.payout_not_ready", seller_id=seller_id)
            raise SellerPayoutNotReadyError(seller_id)
        return account
