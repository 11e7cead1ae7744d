"""Escrow Settlement Materializer — turns a confirmed payment into exactly one Transaction.

Two independent triggers call settle() for the same payment intent, often
within milliseconds of each other: the processor's webhook and the buyer's
browser returning from the payment page. Neither holds a lock. Correctness
comes from:

    1. Read-before-write: an existing Transaction for the intent is returned as is.
    2. The UNIQUE index on transactions.payment_intent_id as the final arbiter:
       the loser of the insert race rolls back, re-reads and returns the
       winner's row.

The insert, the listing flip to SOLD, the intent status update and the
rejection of remaining offers commit together. Notifications and the
confirmation email run afterwards, only for the caller that created the row,
and can never fail the settlement.

A payment that succeeds while another payment already holds the listing
(blocked by the one-open-transaction-per-listing index) is refunded in full
through the processor and recorded as a refunded Transaction, so every
captured charge has a row.

Asynchronous payment methods report ``processing`` before they succeed or
fail. begin_processing() records the row in payment_processing, which
reserves the listing; settle() later moves it to payment_held and
cancel_processing() to cancelled.

Each call uses its own session so the rollback on conflict cannot discard
anyone else's work.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import (
    EmailTemplate,
    NotificationType,
    OfferEventType,
    SettlementTrigger,
    TransactionEventType,
    TransactionStatus,
)
from marketplace_escrow.domain.exceptions import (
    FeeMismatchError,
    InvalidStateTransitionError,
    PaymentMetadataMismatchError,
    PaymentMetadataMissingError,
    UniqueConflictError,
)
from marketplace_escrow.domain.gateway_protocol import IntentMetadata
from marketplace_escrow.domain.state_machine import validate_transaction_transition
from marketplace_escrow.infrastructure.database.orm_models import Transaction
from marketplace_escrow.infrastructure.database.repositories import (
    ListingRepository,
    OfferEventRepository,
    OfferRepository,
    PaymentIntentRepository,
    TransactionEventRepository,
    TransactionRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.side_effects import SideEffectOutbox

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.domain.gateway_protocol import (
        EmailSender,
        NotificationDispatcher,
        PaymentGateway,
    )

logger = get_logger(__name__)

SOLD_REJECT_MESSAGE = "Listing was sold"
DUPLICATE_REFUND_REASON = "listing_already_sold"


def duplicate_refund_idempotency_key(payment_intent_id: str) -> str:
    return f"duplicate:{payment_intent_id}"


@dataclass(frozen=True)
class SettlementResult:
    transaction: Transaction
    created: bool
    duplicate_refunded: bool = False


class SettlementMaterializer:
    """Idempotent creation of the Transaction for a confirmed payment intent."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: NotificationDispatcher | None = None,
        email_sender: EmailSender | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._notifier = notifier
        self._email_sender = email_sender
        self._settings = settings or get_settings()

    async def settle(
        self,
        payment_intent_id: str,
        listing_id: uuid.UUID | str | None = None,
        offer_id: uuid.UUID | str | None = None,
        trigger: SettlementTrigger = SettlementTrigger.WEBHOOK,
        now: datetime | None = None,
    ) -> SettlementResult:
        """Materialize the Transaction for a succeeded payment intent.

        Safe to call any number of times, concurrently, from any trigger.
        When another payment already holds the listing, this payment is
        refunded and the result has duplicate_refunded set.

        Raises:
            PaymentMetadataMissingError: No local record and no processor metadata.
            PaymentMetadataMismatchError: The intent belongs to another listing.
            FeeMismatchError: The recorded fee split does not add up.
        """
        now = now or datetime.now(UTC)
        log = logger.bind(payment_intent_id=payment_intent_id, trigger=str(trigger))

        async with self._session_factory() as session:
            existing = await TransactionRepository(session).get_by_payment_intent_id(
                payment_intent_id
            )
            if existing is not None and existing.status != TransactionStatus.PAYMENT_PROCESSING:
                log.info("settlement.already_exists", transaction_id=str(existing.id))
                return SettlementResult(
                    transaction=existing,
                    created=False,
                    duplicate_refunded=await self._is_duplicate_refund(session, existing),
                )

            metadata = await self._load_metadata(session, payment_intent_id)
            self._check_metadata(metadata, listing_id)

            if existing is not None:
                return await self._complete_processing(session, existing, metadata, trigger, now, log)

            txn = self._build_transaction(
                metadata,
                offer_id,
                TransactionStatus.PAYMENT_HELD,
                now,
                escrow_release_date=now + timedelta(days=self._settings.escrow_hold_days),
            )

            try:
                await self._materialize(session, txn, trigger, now, log)
            except UniqueConflictError as exc:
                await session.rollback()
                log.info("settlement.conflict_reread", constraint=exc.constraint)
                conflict = exc
            else:
                await session.commit()
                conflict = None

        if conflict is not None:
            return await self._resolve_conflict(payment_intent_id, metadata, offer_id, now, log)

        log.info(
            "settlement.created",
            transaction_id=str(txn.id),
            listing_id=metadata.listing_id,
            final_price=txn.final_price,
            platform_fee=txn.platform_fee,
            seller_receives=txn.seller_receives,
            escrow_release_date=txn.escrow_release_date.isoformat(),
        )
        await self._dispatch_side_effects(txn, metadata)
        return SettlementResult(transaction=txn, created=True)

    # ------------------------------------------------------------------
    # Asynchronous payment methods
    # ------------------------------------------------------------------

    async def begin_processing(
        self,
        payment_intent_id: str,
        listing_id: uuid.UUID | str | None = None,
        offer_id: uuid.UUID | str | None = None,
        now: datetime | None = None,
    ) -> Transaction | None:
        """Record a payment the processor is still confirming.

        The row reserves the listing for this buyer. Returns None when
        another payment already holds the listing.
        """
        now = now or datetime.now(UTC)
        log = logger.bind(payment_intent_id=payment_intent_id)

        async with self._session_factory() as session:
            txn_repo = TransactionRepository(session)
            existing = await txn_repo.get_by_payment_intent_id(payment_intent_id)
            if existing is not None:
                log.info("settlement.processing_exists", status=existing.status)
                return existing

            metadata = await self._load_metadata(session, payment_intent_id)
            self._check_metadata(metadata, listing_id)

            new_status = TransactionStatus(
                validate_transaction_transition(TransactionStatus.PENDING.value, "start_processing")
            )
            txn = self._build_transaction(
                metadata,
                offer_id,
                new_status,
                now,
                escrow_release_date=now + timedelta(days=self._settings.escrow_hold_days),
            )
            try:
                await txn_repo.create(txn)
            except UniqueConflictError:
                await session.rollback()
                winner = await txn_repo.get_by_payment_intent_id(payment_intent_id)
                if winner is None:
                    log.warning("settlement.processing_blocked", listing_id=metadata.listing_id)
                return winner

            await TransactionEventRepository(session).record(
                transaction_id=txn.id,
                event_type=TransactionEventType.PAYMENT_PROCESSING,
                old_status=None,
                new_status=new_status,
                payload={"payment_intent_id": payment_intent_id},
            )
            await PaymentIntentRepository(session).update_status(payment_intent_id, "processing")
            await session.commit()

        log.info("settlement.processing", transaction_id=str(txn.id), listing_id=metadata.listing_id)
        return txn

    async def cancel_processing(
        self,
        payment_intent_id: str,
        error: str | None = None,
    ) -> Transaction | None:
        """The processor reported the payment as failed.

        A row still in payment_processing is cancelled, which frees the
        listing. Rows in any other status are left alone.
        """
        log = logger.bind(payment_intent_id=payment_intent_id)
        async with self._session_factory() as session:
            await PaymentIntentRepository(session).update_status(payment_intent_id, "failed")
            txn_repo = TransactionRepository(session)
            txn = await txn_repo.get_by_payment_intent_id(payment_intent_id)
            if txn is None or txn.status != TransactionStatus.PAYMENT_PROCESSING:
                await session.commit()
                log.info("payment.failed", transaction_status=txn.status if txn else None)
                return txn

            new_status = TransactionStatus(self._fire(txn.status, "cancel"))
            swapped = await txn_repo.compare_and_set_status(
                txn.id, TransactionStatus.PAYMENT_PROCESSING, new_status
            )
            current = await txn_repo.get_by_id(txn.id, refresh=True)
            if swapped:
                await TransactionEventRepository(session).record(
                    transaction_id=txn.id,
                    event_type=TransactionEventType.PAYMENT_FAILED,
                    old_status=TransactionStatus.PAYMENT_PROCESSING,
                    new_status=new_status,
                    payload={"error": error},
                )
            await session.commit()

        log.info("settlement.processing_cancelled", transaction_id=str(current.id), error=error)
        return current

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _build_transaction(
        self,
        metadata: IntentMetadata,
        offer_id: uuid.UUID | str | None,
        status: TransactionStatus,
        now: datetime,
        **values,
    ) -> Transaction:
        resolved_offer_id = metadata.offer_id or (str(offer_id) if offer_id else None)
        return Transaction(
            payment_intent_id=metadata.payment_intent_id,
            listing_id=uuid.UUID(metadata.listing_id),
            offer_id=uuid.UUID(resolved_offer_id) if resolved_offer_id else None,
            buyer_id=metadata.buyer_id,
            seller_id=metadata.seller_id,
            final_price=metadata.amount,
            platform_fee=metadata.platform_fee,
            seller_receives=metadata.seller_receives,
            status=status.value,
            created_at=now,
            updated_at=now,
            **values,
        )

    async def _load_metadata(self, session: AsyncSession, payment_intent_id: str) -> IntentMetadata:
        record = await PaymentIntentRepository(session).get_by_id(payment_intent_id)
        if record is not None:
            return IntentMetadata(
                payment_intent_id=record.id,
                listing_id=str(record.listing_id),
                buyer_id=record.buyer_id,
                seller_id=record.seller_id,
                amount=record.amount,
                platform_fee=record.platform_fee,
                seller_receives=record.seller_receives,
                offer_id=str(record.offer_id) if record.offer_id else None,
                buyer_email=record.buyer_email,
            )

        metadata = await self._gateway.get_intent_metadata(payment_intent_id)
        if metadata is None:
            logger.error("settlement.metadata_missing", payment_intent_id=payment_intent_id)
            raise PaymentMetadataMissingError(payment_intent_id)
        logger.info("settlement.metadata_from_processor", payment_intent_id=payment_intent_id)
        return metadata

    @staticmethod
    def _check_metadata(metadata: IntentMetadata, listing_id: uuid.UUID | str | None) -> None:
        if listing_id is not None and str(listing_id) != metadata.listing_id:
            logger.error(
                "settlement.metadata_mismatch",
                payment_intent_id=metadata.payment_intent_id,
                expected_listing=str(listing_id),
                actual_listing=metadata.listing_id,
            )
            raise PaymentMetadataMismatchError(
                metadata.payment_intent_id, str(listing_id), metadata.listing_id
            )
        if metadata.amount <= 0 or not metadata.reconciles():
            logger.error(
                "settlement.fee_mismatch",
                payment_intent_id=metadata.payment_intent_id,
                amount=metadata.amount,
                platform_fee=metadata.platform_fee,
                seller_receives=metadata.seller_receives,
            )
            raise FeeMismatchError(metadata.amount, metadata.platform_fee, metadata.seller_receives)

    async def _materialize(
        self,
        session: AsyncSession,
        txn: Transaction,
        trigger: SettlementTrigger,
        now: datetime,
        log,  # noqa: ANN001
    ) -> None:
        """Write everything that must commit together with the Transaction row."""
        await TransactionRepository(session).create(txn)
        await TransactionEventRepository(session).record(
            transaction_id=txn.id,
            event_type=TransactionEventType.PAYMENT_SUCCEEDED,
            old_status=None,
            new_status=TransactionStatus.PAYMENT_HELD,
            payload={"trigger": str(trigger), "payment_intent_id": txn.payment_intent_id},
        )
        await PaymentIntentRepository(session).update_status(txn.payment_intent_id, "succeeded")
        await self._close_listing(session, txn, now, log)

    async def _complete_processing(
        self,
        session: AsyncSession,
        txn: Transaction,
        metadata: IntentMetadata,
        trigger: SettlementTrigger,
        now: datetime,
        log,  # noqa: ANN001
    ) -> SettlementResult:
        """Move a payment_processing row to payment_held once the charge succeeds."""
        new_status = TransactionStatus(self._fire(txn.status, "hold_payment"))
        txn_repo = TransactionRepository(session)
        swapped = await txn_repo.compare_and_set_status(
            txn.id,
            TransactionStatus.PAYMENT_PROCESSING,
            new_status,
            escrow_release_date=now + timedelta(days=self._settings.escrow_hold_days),
        )
        current = await txn_repo.get_by_id(txn.id, refresh=True)
        if not swapped:
            await session.rollback()
            log.info("settlement.already_exists", transaction_id=str(txn.id))
            return SettlementResult(transaction=current, created=False)

        await TransactionEventRepository(session).record(
            transaction_id=txn.id,
            event_type=TransactionEventType.PAYMENT_SUCCEEDED,
            old_status=TransactionStatus.PAYMENT_PROCESSING,
            new_status=new_status,
            payload={"trigger": str(trigger), "payment_intent_id": txn.payment_intent_id},
        )
        await PaymentIntentRepository(session).update_status(txn.payment_intent_id, "succeeded")
        await self._close_listing(session, current, now, log)
        await session.commit()

        log.info(
            "settlement.processing_completed",
            transaction_id=str(current.id),
            escrow_release_date=current.escrow_release_date.isoformat(),
        )
        await self._dispatch_side_effects(current, metadata)
        return SettlementResult(transaction=current, created=True)

    async def _close_listing(
        self,
        session: AsyncSession,
        txn: Transaction,
        now: datetime,
        log,  # noqa: ANN001
    ) -> None:
        """Mark the listing sold and reject the offers still pending on it."""
        sold = await ListingRepository(session).mark_sold(txn.listing_id, txn.final_price, now)
        if not sold:
            log.warning("settlement.listing_already_sold", listing_id=str(txn.listing_id))

        rejected = await OfferRepository(session).reject_pending_for_listing(
            txn.listing_id, now, SOLD_REJECT_MESSAGE
        )
        events = OfferEventRepository(session)
        for rejected_id, _buyer_id in rejected:
            await events.record(
                offer_id=rejected_id,
                event_type=OfferEventType.REJECTED,
                actor_id="SYSTEM",
                payload={"reason": SOLD_REJECT_MESSAGE, "transaction_id": str(txn.id)},
                created_at=now,
            )

    async def _resolve_conflict(
        self,
        payment_intent_id: str,
        metadata: IntentMetadata,
        offer_id: uuid.UUID | str | None,
        now: datetime,
        log,  # noqa: ANN001
    ) -> SettlementResult:
        """Lost the insert race: return the winner, or refund a second payment."""
        async with self._session_factory() as session:
            winner = await TransactionRepository(session).get_by_payment_intent_id(
                payment_intent_id
            )
            if winner is not None:
                log.info("settlement.conflict_resolved", transaction_id=str(winner.id))
                return SettlementResult(
                    transaction=winner,
                    created=False,
                    duplicate_refunded=await self._is_duplicate_refund(session, winner),
                )

        # the conflict came from the one-open-transaction-per-listing index
        log.warning("settlement.double_sale", listing_id=metadata.listing_id)
        return await self._refund_duplicate(metadata, offer_id, now, log)

    async def _refund_duplicate(
        self,
        metadata: IntentMetadata,
        offer_id: uuid.UUID | str | None,
        now: datetime,
        log,  # noqa: ANN001
    ) -> SettlementResult:
        """Refund a payment for a listing another payment already holds."""
        payment_intent_id = metadata.payment_intent_id
        refund_id = await self._gateway.create_refund(
            payment_intent_id,
            amount=None,
            idempotency_key=duplicate_refund_idempotency_key(payment_intent_id),
            reason="duplicate",
            metadata={"listing_id": metadata.listing_id, "reason": DUPLICATE_REFUND_REASON},
        )

        txn = self._build_transaction(
            metadata,
            offer_id,
            TransactionStatus.REFUNDED,
            now,
            escrow_release_date=now,
            refunded_amount=metadata.amount,
        )
        async with self._session_factory() as session:
            txn_repo = TransactionRepository(session)
            try:
                await txn_repo.create(txn)
            except UniqueConflictError:
                await session.rollback()
                winner = await txn_repo.get_by_payment_intent_id(payment_intent_id)
                log.info("settlement.conflict_resolved", transaction_id=str(winner.id))
                return SettlementResult(
                    transaction=winner,
                    created=False,
                    duplicate_refunded=await self._is_duplicate_refund(session, winner),
                )
            await TransactionEventRepository(session).record(
                transaction_id=txn.id,
                event_type=TransactionEventType.DUPLICATE_PAYMENT_REFUNDED,
                old_status=None,
                new_status=TransactionStatus.REFUNDED,
                payload={"refund_id": refund_id, "reason": DUPLICATE_REFUND_REASON},
            )
            await PaymentIntentRepository(session).update_status(payment_intent_id, "refunded")
            await session.commit()

        log.warning(
            "settlement.duplicate_refunded",
            transaction_id=str(txn.id),
            listing_id=metadata.listing_id,
            refund_id=refund_id,
            amount=metadata.amount,
        )
        outbox = self._outbox()
        outbox.notify(
            txn.buyer_id,
            NotificationType.PAYMENT_REFUNDED,
            {
                "transaction_id": str(txn.id),
                "listing_id": str(txn.listing_id),
                "amount": txn.final_price,
                "reason": DUPLICATE_REFUND_REASON,
            },
        )
        await outbox.flush()
        return SettlementResult(transaction=txn, created=True, duplicate_refunded=True)

    async def _dispatch_side_effects(self, txn: Transaction, metadata: IntentMetadata) -> None:
        payload = {
            "transaction_id": str(txn.id),
            "listing_id": str(txn.listing_id),
            "amount": txn.final_price,
        }
        outbox = self._outbox()
        outbox.notify(txn.seller_id, NotificationType.SALE_COMPLETED, payload)
        outbox.notify(txn.buyer_id, NotificationType.PURCHASE_COMPLETED, payload)
        outbox.email(
            metadata.buyer_email,
            EmailTemplate.PAYMENT_CONFIRMATION,
            {
                **payload,
                "escrow_release_date": txn.escrow_release_date.date().isoformat(),
                "transaction_url": f"{self._settings.app_base_url}/transactions/{txn.id}",
            },
        )
        await outbox.flush()

    def _outbox(self) -> SideEffectOutbox:
        return SideEffectOutbox(
            self._notifier, self._email_sender, self._settings.side_effect_timeout_seconds
        )

    @staticmethod
    async def _is_duplicate_refund(session: AsyncSession, txn: Transaction) -> bool:
        if txn.status != TransactionStatus.REFUNDED:
            return False
        events = await TransactionEventRepository(session).get_by_transaction(txn.id)
        return any(
            event.event_type == TransactionEventType.DUPLICATE_PAYMENT_REFUNDED for event in events
        )

    @staticmethod
    def _fire(current_status: str, event_name: str) -> str:
        from statemachine.exceptions import TransitionNotAllowed

        try:
            return validate_transaction_transition(current_status, event_name)
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(current_status, event_name) from err
