"""Read side of escrow transactions: details, per-user history and event logs."""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.domain.exceptions import (
    NotTransactionParticipantError,
    TransactionNotFoundError,
)
from marketplace_escrow.infrastructure.database.repositories import (
    TransactionEventRepository,
    TransactionRepository,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.infrastructure.database.orm_models import (
        Transaction,
        TransactionEvent,
    )

USER_ROLES = ("buyer", "seller")


class TransactionService:
    def __init__(self, session: AsyncSession) -> None:
        self._txn_repo = TransactionRepository(session)
        self._event_repo = TransactionEventRepository(session)

    async def get_transaction(self, transaction_id: uuid.UUID) -> Transaction:
        txn = await self._txn_repo.get_by_id(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(str(transaction_id))
        return txn

    async def list_for_user(self, user_id: str, role: str | None = None) -> list[Transaction]:
        """Purchases and sales of a user, newest first. role narrows to one side."""
        return await self._txn_repo.get_by_user(user_id, role)

    async def get_events(self, transaction_id: uuid.UUID, actor_id: str) -> list[TransactionEvent]:
        """Event log of a transaction, oldest first. Only its buyer and seller may read it."""
        txn = await self.get_transaction(transaction_id)
        if actor_id not in (txn.buyer_id, txn.seller_id):
            raise NotTransactionParticipantError(
                str(transaction_id), actor_id, action="view the history of"
            )
        return await self._event_repo.get_by_transaction(txn.id)
