"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status changes on offers, transactions and listings are compare-and-swap
UPDATEs filtered on the expected current status. They return whether a row
was affected; interpreting a lost race is the service's job.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, NamedTuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from marketplace_escrow.domain.enums import ListingStatus, OfferStatus, TransactionStatus
from marketplace_escrow.domain.exceptions import UniqueConflictError
from marketplace_escrow.infrastructure.database.orm_models import (
    ConnectedAccount,
    Listing,
    Notification,
    Offer,
    OfferEvent,
    PaymentIntentRecord,
    Transaction,
    TransactionEvent,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import OfferEventType, TransactionEventType
    from marketplace_escrow.domain.gateway_protocol import AccountStatus


class ExpiredOffer(NamedTuple):
    offer_id: uuid.UUID
    buyer_id: str
    buyer_email: str | None
    listing_id: uuid.UUID
    amount: int


class ListingRepository:
    """Data access for the minimal listing row."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, listing: Listing) -> Listing:
        self._session.add(listing)
        await self._session.flush()
        return listing

    async def get_by_id(self, listing_id: uuid.UUID, refresh: bool = False) -> Listing | None:
        stmt = select(Listing).where(Listing.id == listing_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def compare_and_set_status(
        self,
        listing_id: uuid.UUID,
        expected: Iterable[ListingStatus],
        new_status: ListingStatus,
    ) -> bool:
        """Move a listing to new_status only if it is currently in one of expected."""
        result = await self._session.execute(
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.status.in_([s.value for s in expected]),
            )
            .values(status=new_status.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_sold(self, listing_id: uuid.UUID, price: int, sold_at: datetime) -> bool:
        """Flip a listing to SOLD with price and date.

        Returns False (and changes nothing) if the listing is already SOLD.
        """
        result = await self._session.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.status != ListingStatus.SOLD.value)
            .values(
                status=ListingStatus.SOLD.value,
                sold_price=price,
                sold_at=sold_at,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class OfferRepository:
    """Data access for offers."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, offer: Offer) -> Offer:
        """Insert a new offer."""
        self._session.add(offer)
        await self._session.flush()
        return offer

    async def get_by_id(self, offer_id: uuid.UUID, refresh: bool = False) -> Offer | None:
        """Fetch an offer by its UUID.

        refresh=True bypasses the identity map so a status written by another
        session (or by a bulk UPDATE in this one) is observed.
        """
        stmt = select(Offer).where(Offer.id == offer_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_listing(
        self,
        listing_id: uuid.UUID,
        status: OfferStatus | None = None,
    ) -> list[Offer]:
        """Fetch the offers on a listing, newest first."""
        stmt = select(Offer).where(Offer.listing_id == listing_id)
        if status is not None:
            stmt = stmt.where(Offer.status == status.value)
        result = await self._session.execute(stmt.order_by(Offer.created_at.desc()))
        return list(result.scalars().all())

    async def compare_and_set_status(
        self,
        offer_id: uuid.UUID,
        expected: OfferStatus,
        new_status: OfferStatus,
        **values,
    ) -> bool:
        """Apply a status transition only if the row is still in `expected`.

        Extra column values (responded_at, amount, expires_at...) are written in
        the same UPDATE. Returns True if exactly one row changed.
        """
        result = await self._session.execute(
            update(Offer)
            .where(Offer.id == offer_id, Offer.status == expected.value)
            .values(status=new_status.value, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reject_pending_for_listing(
        self,
        listing_id: uuid.UUID,
        now: datetime,
        response_message: str,
        exclude_offer_id: uuid.UUID | None = None,
    ) -> list[tuple[uuid.UUID, str]]:
        """Batch CAS pending -> rejected for every other offer on a listing.

        Returns (offer_id, buyer_id) for each offer actually rejected.
        """
        stmt = update(Offer).where(
            Offer.listing_id == listing_id,
            Offer.status == OfferStatus.PENDING.value,
        )
        if exclude_offer_id is not None:
            stmt = stmt.where(Offer.id != exclude_offer_id)
        result = await self._session.execute(
            stmt.values(
                status=OfferStatus.REJECTED.value,
                responded_at=now,
                response_message=response_message,
                updated_at=now,
            )
            .returning(Offer.id, Offer.buyer_id)
            .execution_options(synchronize_session=False)
        )
        return [(row.id, row.buyer_id) for row in result.all()]

    async def expire_due(self, now: datetime) -> list[ExpiredOffer]:
        """Batch CAS pending -> expired for every offer whose expires_at < now.

        Returns one ExpiredOffer for each offer this call expired. A
        concurrent accept or cancel that won the row is simply not returned.
        """
        result = await self._session.execute(
            update(Offer)
            .where(Offer.status == OfferStatus.PENDING.value, Offer.expires_at < now)
            .values(status=OfferStatus.EXPIRED.value, updated_at=now)
            .returning(Offer.id, Offer.buyer_id, Offer.buyer_email, Offer.listing_id, Offer.amount)
            .execution_options(synchronize_session=False)
        )
        return [ExpiredOffer(*row) for row in result.all()]


class OfferEventRepository:
    """Data access for the append-only offer event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        offer_id: uuid.UUID,
        event_type: OfferEventType,
        actor_id: str = "SYSTEM",
        payload: dict | None = None,
        created_at: datetime | None = None,
    ) -> OfferEvent:
        """Append a new offer event. This is the ONLY write operation allowed."""
        evt = OfferEvent(
            offer_id=offer_id,
            event_type=event_type.value,
            actor_id=actor_id,
            payload=payload,
            created_at=created_at or datetime.now(UTC),
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_offer(self, offer_id: uuid.UUID) -> list[OfferEvent]:
        """Fetch all events for an offer in chronological order."""
        result = await self._session.execute(
            select(OfferEvent)
            .where(OfferEvent.offer_id == offer_id)
            .order_by(OfferEvent.created_at.asc())
        )
        return list(result.scalars().all())


class PaymentIntentRepository:
    """Data access for local payment intent references."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, record: PaymentIntentRecord) -> PaymentIntentRecord:
        self._session.add(record)
        await self._session.flush()
        return record

    async def get_by_id(self, payment_intent_id: str) -> PaymentIntentRecord | None:
        result = await self._session.execute(
            select(PaymentIntentRecord).where(PaymentIntentRecord.id == payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def update_status(self, payment_intent_id: str, status: str) -> bool:
        result = await self._session.execute(
            update(PaymentIntentRecord)
            .where(PaymentIntentRecord.id == payment_intent_id)
            .values(status=status, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class TransactionRepository:
    """Data access for settled transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, txn: Transaction) -> Transaction:
        """Insert a new transaction.

        Raises:
            UniqueConflictError: Another writer already inserted a transaction
                for this payment intent (or an open one for this listing).
                The session must be rolled back by the caller.
        """
        self._session.add(txn)
        try:
            await self._session.flush()
        except IntegrityError as err:
            detail = str(err.orig)
            if "unique" not in detail.lower():
                raise
            constraint = (
                "transactions.payment_intent_id"
                if "payment_intent_id" in detail
                else "uq_transaction_open_listing"
            )
            raise UniqueConflictError(constraint, detail) from err
        return txn

    async def get_by_id(self, transaction_id: uuid.UUID, refresh: bool = False) -> Transaction | None:
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_payment_intent_id(self, payment_intent_id: str) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction).where(Transaction.payment_intent_id == payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def get_by_user(self, user_id: str, role: str | None = None) -> list[Transaction]:
        """Transactions where the user is the buyer or the seller, newest first.

        role="buyer" or role="seller" narrows to one side.
        """
        if role == "buyer":
            condition = Transaction.buyer_id == user_id
        elif role == "seller":
            condition = Transaction.seller_id == user_id
        else:
            condition = or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id)
        result = await self._session.execute(
            select(Transaction).where(condition).order_by(Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_due_for_release(self, now: datetime) -> list[Transaction]:
        """Held transactions whose escrow release date has passed, oldest first."""
        result = await self._session.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PAYMENT_HELD.value,
                Transaction.escrow_release_date <= now,
            )
            .order_by(Transaction.escrow_release_date.asc())
        )
        return list(result.scalars().all())

    async def compare_and_set_status(
        self,
        transaction_id: uuid.UUID,
        expected: TransactionStatus,
        new_status: TransactionStatus,
        expected_refunded_amount: int | None = None,
        **values,
    ) -> bool:
        """Conditional status update; False when another writer got there first.

        expected_refunded_amount additionally pins the refunded total, so two
        partial refunds cannot both apply on top of the same starting amount.
        """
        conditions = [Transaction.id == transaction_id, Transaction.status == expected.value]
        if expected_refunded_amount is not None:
            conditions.append(Transaction.refunded_amount == expected_refunded_amount)
        result = await self._session.execute(
            update(Transaction)
            .where(*conditions)
            .values(status=new_status.value, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class TransactionEventRepository:
    """Data access for the append-only transaction event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        transaction_id: uuid.UUID,
        event_type: TransactionEventType,
        old_status: TransactionStatus | None,
        new_status: TransactionStatus,
        actor_id: str = "SYSTEM",
        payload: dict | None = None,
    ) -> TransactionEvent:
        evt = TransactionEvent(
            transaction_id=transaction_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor_id=actor_id,
            payload=payload,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_transaction(self, transaction_id: uuid.UUID) -> list[TransactionEvent]:
        result = await self._session.execute(
            select(TransactionEvent)
            .where(TransactionEvent.transaction_id == transaction_id)
            .order_by(TransactionEvent.created_at.asc())
        )
        return list(result.scalars().all())


class ConnectedAccountRepository:
    """Data access for the payout-account status cache."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_user_id(self, user_id: str) -> ConnectedAccount | None:
        result = await self._session.execute(
            select(ConnectedAccount).where(ConnectedAccount.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_processor_account_id(self, account_id: str) -> ConnectedAccount | None:
        result = await self._session.execute(
            select(ConnectedAccount).where(ConnectedAccount.processor_account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def save_status(
        self,
        user_id: str,
        status: AccountStatus,
        synced_at: datetime | None = None,
        email: str | None = None,
    ) -> ConnectedAccount:
        """Insert or overwrite the cached flags for a user's payout account."""
        account = await self.get_by_user_id(user_id)
        if account is None:
            account = ConnectedAccount(user_id=user_id, processor_account_id=status.account_id)
            self._session.add(account)
        account.processor_account_id = status.account_id
        account.charges_enabled = status.charges_enabled
        account.payouts_enabled = status.payouts_enabled
        account.details_submitted = status.details_submitted
        if email:
            account.email = email
        account.synced_at = synced_at or datetime.now(UTC)
        await self._session.flush()
        return account


class NotificationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, notification: Notification) -> Notification:
        self._session.add(notification)
        await self._session.flush()
        return notification

    async def get_by_user(self, user_id: str) -> list[Notification]:
        result = await self._session.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
        )
        return list(result.scalars().all())
