"""Escrow release, refunds and disputes.

Release moves the seller's share out of the platform account with a
processor transfer, either when the buyer confirms receipt or automatically
once the escrow release date has passed. The transfer carries the
idempotency key ``release:<transaction id>`` so a retried release can never
pay the seller twice.

Refunds reach a Transaction two ways: the seller processes one here (after
either party has asked for it with request_refund), or the processor reports
one made elsewhere (charge.refunded). Both apply the new cumulative refunded
total with a compare-and-swap pinned on the previous total; a full refund
puts the listing back on sale. A processor report of a total already
recorded is a no-op.

A chargeback opened against a held payment freezes it in disputed, which
keeps it out of the automatic release.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import (
    EmailTemplate,
    ListingStatus,
    NotificationType,
    TransactionEventType,
    TransactionStatus,
)
from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    MarketplaceError,
    NotTransactionParticipantError,
    RefundValidationError,
    SellerPayoutNotReadyError,
    TransactionNotFoundError,
)
from marketplace_escrow.domain.state_machine import TransactionStateMachine
from marketplace_escrow.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    ListingRepository,
    PaymentIntentRepository,
    TransactionEventRepository,
    TransactionRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.side_effects import SideEffectOutbox

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.domain.gateway_protocol import (
        EmailSender,
        NotificationDispatcher,
        PaymentGateway,
    )
    from marketplace_escrow.infrastructure.database.orm_models import (
        Transaction,
        TransactionEvent,
    )

logger = get_logger(__name__)

REFUNDABLE_STATUSES = frozenset({
    TransactionStatus.PAYMENT_HELD,
    TransactionStatus.COMPLETED,
    TransactionStatus.PARTIALLY_REFUNDED,
    TransactionStatus.DISPUTED,
})


def release_idempotency_key(transaction_id: uuid.UUID) -> str:
    return f"release:{transaction_id}"


def refund_idempotency_key(transaction_id: uuid.UUID, refunded_total: int) -> str:
    # keyed on the total after the refund, so each partial refund is distinct
    return f"refund:{transaction_id}:{refunded_total}"


class ReleaseService:
    """Releases held funds to sellers, refunds buyers and freezes disputed payments."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: NotificationDispatcher | None = None,
        settings: Settings | None = None,
        email_sender: EmailSender | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._notifier = notifier
        self._email_sender = email_sender
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(
        self,
        transaction_id: uuid.UUID,
        actor_id: str,
        now: datetime | None = None,
    ) -> Transaction:
        """Buyer confirms receipt and releases the held funds early."""
        outbox = self._outbox()
        async with self._session_factory() as session:
            txn = await self._get_transaction_or_raise(session, transaction_id)
            if actor_id != txn.buyer_id:
                raise NotTransactionParticipantError(str(transaction_id), actor_id)
            txn = await self._release(session, txn, actor_id, now or datetime.now(UTC))
            await self._queue_release_effects(session, txn, outbox)

        await outbox.flush()
        return txn

    async def release_due(self, now: datetime | None = None) -> list[uuid.UUID]:
        """Release every held transaction whose release date has passed.

        A failure on one transaction is logged and does not stop the others.
        """
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            due_ids = [txn.id for txn in await TransactionRepository(session).get_due_for_release(now)]

        released: list[uuid.UUID] = []
        for transaction_id in due_ids:
            outbox = self._outbox()
            try:
                async with self._session_factory() as session:
                    txn = await self._get_transaction_or_raise(session, transaction_id)
                    txn = await self._release(session, txn, "SYSTEM", now)
                    await self._queue_release_effects(session, txn, outbox)
            except MarketplaceError as exc:
                logger.warning(
                    "release.auto_failed",
                    transaction_id=str(transaction_id),
                    error=exc.message,
                    code=exc.code,
                )
                continue
            released.append(transaction_id)
            await outbox.flush()

        logger.info("release.due_completed", due=len(due_ids), released=len(released))
        return released

    async def _release(
        self,
        session: AsyncSession,
        txn: Transaction,
        actor_id: str,
        now: datetime,
    ) -> Transaction:
        self._fire_transition(txn, "release")

        account = await ConnectedAccountRepository(session).get_by_user_id(txn.seller_id)
        if account is None:
            raise SellerPayoutNotReadyError(txn.seller_id)

        transfer_id = await self._gateway.create_transfer(
            amount=txn.seller_receives,
            destination_account_id=account.processor_account_id,
            idempotency_key=release_idempotency_key(txn.id),
            metadata={"transaction_id": str(txn.id), "listing_id": str(txn.listing_id)},
        )

        txn_repo = TransactionRepository(session)
        swapped = await txn_repo.compare_and_set_status(
            txn.id,
            TransactionStatus.PAYMENT_HELD,
            TransactionStatus.COMPLETED,
            transfer_id=transfer_id,
            escrow_released_at=now,
            completed_at=now,
        )
        current = await txn_repo.get_by_id(txn.id, refresh=True)
        if not swapped:
            # released concurrently; the shared idempotency key made the transfer a no-op
            raise InvalidStateTransitionError(current.status, TransactionStatus.COMPLETED.value)

        await TransactionEventRepository(session).record(
            transaction_id=txn.id,
            event_type=TransactionEventType.FUNDS_RELEASED,
            old_status=TransactionStatus.PAYMENT_HELD,
            new_status=TransactionStatus.COMPLETED,
            actor_id=actor_id,
            payload={"transfer_id": transfer_id, "amount": txn.seller_receives},
        )
        await session.commit()

        logger.info(
            "release.completed",
            transaction_id=str(txn.id),
            transfer_id=transfer_id,
            amount=txn.seller_receives,
            by=actor_id,
        )
        return current

    async def _queue_release_effects(
        self, session: AsyncSession, txn: Transaction, outbox: SideEffectOutbox
    ) -> None:
        outbox.notify(
            txn.seller_id,
            NotificationType.PAYMENT_RELEASED,
            {"transaction_id": str(txn.id), "amount": txn.seller_receives},
        )
        if self._email_sender is None:
            return

        listing = await ListingRepository(session).get_by_id(txn.listing_id)
        data = {
            "transaction_id": str(txn.id),
            "listing_id": str(txn.listing_id),
            "listing_title": listing.title if listing is not None else "",
            "amount": txn.seller_receives,
            "transaction_url": f"{self._settings.app_base_url}/transactions/{txn.id}",
        }
        account = await ConnectedAccountRepository(session).get_by_user_id(txn.seller_id)
        intent = await PaymentIntentRepository(session).get_by_id(txn.payment_intent_id)
        outbox.email(
            account.email if account is not None else None,
            EmailTemplate.ESCROW_RELEASED,
            {**data, "recipient_type": "seller"},
        )
        outbox.email(
            intent.buyer_email if intent is not None else None,
            EmailTemplate.ESCROW_RELEASED,
            {**data, "recipient_type": "buyer"},
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def request_refund(
        self,
        transaction_id: uuid.UUID,
        actor_id: str,
        reason: str,
        amount: int | None = None,
    ) -> TransactionEvent:
        """Either party asks for a refund; the seller decides with process_refund().

        The request is recorded on the transaction's event log and the other
        party is notified. The transaction status does not change.
        """
        outbox = self._outbox()
        async with self._session_factory() as session:
            txn = await self._get_transaction_or_raise(session, transaction_id)
            if actor_id not in (txn.buyer_id, txn.seller_id):
                raise NotTransactionParticipantError(
                    str(transaction_id), actor_id, action="request a refund for"
                )
            if txn.status not in REFUNDABLE_STATUSES:
                raise InvalidStateTransitionError(txn.status, "refund_requested")
            remaining = txn.final_price - txn.refunded_amount
            requested = remaining if amount is None else amount
            self._validate_refund_amount(requested, remaining)

            status = TransactionStatus(txn.status)
            event = await TransactionEventRepository(session).record(
                transaction_id=txn.id,
                event_type=TransactionEventType.REFUND_REQUESTED,
                old_status=status,
                new_status=status,
                actor_id=actor_id,
                payload={"reason": reason, "amount": requested, "full": requested == remaining},
            )
            await session.commit()

        logger.info(
            "refund.requested",
            transaction_id=str(txn.id),
            amount=requested,
            by=actor_id,
        )
        other_party = txn.seller_id if actor_id == txn.buyer_id else txn.buyer_id
        outbox.notify(
            other_party,
            NotificationType.REFUND_REQUESTED,
            {"transaction_id": str(txn.id), "amount": requested, "reason": reason},
        )
        await outbox.flush()
        return event

    async def process_refund(
        self,
        transaction_id: uuid.UUID,
        actor_id: str,
        amount: int | None = None,
    ) -> Transaction:
        """Seller refunds the buyer through the processor.

        Without an amount the whole remaining balance is refunded.

        Raises:
            NotTransactionParticipantError: The actor is not the seller.
            RefundValidationError: Amount not positive or above what is left.
            InvalidStateTransitionError: The transaction cannot be refunded.
        """
        outbox = self._outbox()
        async with self._session_factory() as session:
            txn = await self._get_transaction_or_raise(session, transaction_id)
            if actor_id != txn.seller_id:
                raise NotTransactionParticipantError(str(transaction_id), actor_id, action="refund")
            remaining = txn.final_price - txn.refunded_amount
            refund_amount = remaining if amount is None else amount
            self._validate_refund_amount(refund_amount, remaining)

            new_total = txn.refunded_amount + refund_amount
            self._fire_transition(txn, self._refund_event(txn, new_total))

            refund_id = await self._gateway.create_refund(
                txn.payment_intent_id,
                amount=refund_amount,
                idempotency_key=refund_idempotency_key(txn.id, new_total),
                metadata={"transaction_id": str(txn.id), "requested_by": actor_id},
            )
            current = await self._apply_refund_total(
                session,
                txn,
                new_total,
                actor_id,
                {"refund_id": refund_id, "amount": refund_amount},
            )
            await session.commit()

        logger.info(
            "refund.processed",
            transaction_id=str(current.id),
            refund_id=refund_id,
            amount=refund_amount,
            status=current.status,
        )
        payload = {
            "transaction_id": str(current.id),
            "amount": refund_amount,
            "refunded_amount": current.refunded_amount,
            "status": current.status,
        }
        outbox.notify(current.buyer_id, NotificationType.REFUND_PROCESSED, payload)
        outbox.notify(current.seller_id, NotificationType.REFUND_PROCESSED, payload)
        await outbox.flush()
        return current

    async def apply_refund(
        self,
        payment_intent_id: str,
        amount_refunded: int,
        amount: int | None = None,
    ) -> Transaction | None:
        """Apply a processor refund. Unknown intents are logged and ignored.

        amount_refunded is the processor's cumulative total for the charge.
        """
        async with self._session_factory() as session:
            txn = await TransactionRepository(session).get_by_payment_intent_id(payment_intent_id)
            if txn is None:
                logger.warning("refund.unknown_intent", payment_intent_id=payment_intent_id)
                return None
            if txn.status == TransactionStatus.REFUNDED or amount_refunded <= txn.refunded_amount:
                logger.info("refund.already_applied", transaction_id=str(txn.id))
                return txn

            charge_amount = amount if amount is not None else txn.final_price
            new_total = txn.final_price if amount_refunded >= charge_amount else amount_refunded
            self._fire_transition(txn, self._refund_event(txn, new_total))
            current = await self._apply_refund_total(
                session, txn, new_total, "SYSTEM", {"source": "processor"}
            )
            await session.commit()

        logger.info(
            "refund.applied",
            transaction_id=str(current.id),
            amount_refunded=amount_refunded,
            status=current.status,
        )
        return current

    async def _apply_refund_total(
        self,
        session: AsyncSession,
        txn: Transaction,
        new_total: int,
        actor_id: str,
        payload: dict,
    ) -> Transaction:
        full = new_total >= txn.final_price
        target = TransactionStatus.REFUNDED if full else TransactionStatus.PARTIALLY_REFUNDED
        old_status = TransactionStatus(txn.status)

        txn_repo = TransactionRepository(session)
        swapped = await txn_repo.compare_and_set_status(
            txn.id,
            old_status,
            target,
            expected_refunded_amount=txn.refunded_amount,
            refunded_amount=new_total,
        )
        current = await txn_repo.get_by_id(txn.id, refresh=True)
        if not swapped:
            raise InvalidStateTransitionError(current.status, target.value)

        if full:
            await ListingRepository(session).compare_and_set_status(
                txn.listing_id,
                [ListingStatus.SOLD, ListingStatus.PENDING],
                ListingStatus.ACTIVE,
            )
        await TransactionEventRepository(session).record(
            transaction_id=txn.id,
            event_type=TransactionEventType.REFUND_COMPLETED,
            old_status=old_status,
            new_status=target,
            actor_id=actor_id,
            payload={**payload, "amount_refunded": new_total, "full": full},
        )
        return current

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        payment_intent_id: str,
        reason: str | None = None,
        dispute_id: str | None = None,
    ) -> Transaction | None:
        """Freeze a held payment the buyer has disputed with their bank.

        Returns None for an unknown intent. Transactions that are not held
        (already released, refunded, or disputed) are returned unchanged.
        """
        log = logger.bind(payment_intent_id=payment_intent_id, dispute_id=dispute_id)
        async with self._session_factory() as session:
            txn_repo = TransactionRepository(session)
            txn = await txn_repo.get_by_payment_intent_id(payment_intent_id)
            if txn is None:
                log.warning("dispute.unknown_intent")
                return None
            if txn.status != TransactionStatus.PAYMENT_HELD:
                log.info("dispute.not_held", transaction_id=str(txn.id), status=txn.status)
                return txn

            self._fire_transition(txn, "open_dispute")
            swapped = await txn_repo.compare_and_set_status(
                txn.id, TransactionStatus.PAYMENT_HELD, TransactionStatus.DISPUTED
            )
            current = await txn_repo.get_by_id(txn.id, refresh=True)
            if not swapped:
                log.info("dispute.not_held", transaction_id=str(txn.id), status=current.status)
                return current
            await TransactionEventRepository(session).record(
                transaction_id=txn.id,
                event_type=TransactionEventType.DISPUTE_OPENED,
                old_status=TransactionStatus.PAYMENT_HELD,
                new_status=TransactionStatus.DISPUTED,
                payload={"reason": reason, "dispute_id": dispute_id},
            )
            await session.commit()

        log.warning("dispute.opened", transaction_id=str(current.id), reason=reason)
        outbox = self._outbox()
        outbox.notify(
            current.seller_id,
            NotificationType.PAYMENT_DISPUTED,
            {"transaction_id": str(current.id), "amount": current.final_price, "reason": reason},
        )
        await outbox.flush()
        return current

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_transaction_or_raise(
        session: AsyncSession, transaction_id: uuid.UUID
    ) -> Transaction:
        txn = await TransactionRepository(session).get_by_id(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(str(transaction_id))
        return txn

    @staticmethod
    def _fire_transition(txn: Transaction, event_name: str) -> None:
        from statemachine.exceptions import TransitionNotAllowed

        sm = TransactionStateMachine(current_status=txn.status)
        try:
            getattr(sm, event_name)()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(txn.status, event_name) from err

    @staticmethod
    def _refund_event(txn: Transaction, new_total: int) -> str:
        return "refund_full" if new_total >= txn.final_price else "refund_partial"

    @staticmethod
    def _validate_refund_amount(amount: int, remaining: int) -> None:
        if amount <= 0:
            raise RefundValidationError("Refund amount must be positive")
        if amount > remaining:
            raise RefundValidationError(
                f"Refund amount {amount} exceeds the {remaining} left to refund"
            )

    def _outbox(self) -> SideEffectOutbox:
        return SideEffectOutbox(
            self._notifier, self._email_sender, self._settings.side_effect_timeout_seconds
        )
