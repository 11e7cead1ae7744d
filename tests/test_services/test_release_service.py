"""Tests for escrow release, refunds and disputes."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from marketplace_escrow.domain.enums import ListingStatus, TransactionStatus
from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    NotTransactionParticipantError,
    RefundValidationError,
    SellerPayoutNotReadyError,
    TransactionNotFoundError,
)
from marketplace_escrow.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    ListingRepository,
    TransactionEventRepository,
    TransactionRepository,
)
from marketplace_escrow.services.checkout_service import CheckoutService
from marketplace_escrow.services.release_service import (
    ReleaseService,
    refund_idempotency_key,
    release_idempotency_key,
)
from marketplace_escrow.services.settlement_service import SettlementMaterializer
from tests.helpers import BUYER_ID, SELLER_ACCOUNT_ID, SELLER_ID, make_intent_metadata

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _settled(session_factory, gateway, settings, listing, pi_id="pi_release"):  # noqa: ANN001, ANN202
    gateway.register_intent(make_intent_metadata(listing, payment_intent_id=pi_id))
    result = await SettlementMaterializer(session_factory, gateway, settings=settings).settle(
        pi_id, now=NOW
    )
    return result.transaction


@pytest.fixture
def release_service(session_factory, gateway, notifier, settings, email_sender):  # noqa: ANN001, ANN201
    return ReleaseService(session_factory, gateway, notifier, settings, email_sender)


@pytest.mark.usefixtures("seller_account")
class TestRelease:
    @pytest.mark.asyncio
    async def test_buyer_releases_funds(
        self, release_service, session_factory, gateway, settings, listing, notifier
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)

        released = await release_service.release(txn.id, BUYER_ID, now=NOW + timedelta(days=1))

        assert released.status == TransactionStatus.COMPLETED
        assert released.transfer_id.startswith("tr_sim_")
        assert released.escrow_released_at == NOW + timedelta(days=1)
        transfer = gateway.transfers[release_idempotency_key(txn.id)]
        assert transfer["amount"] == 4750
        assert transfer["destination"] == SELLER_ACCOUNT_ID
        assert notifier.types_for(SELLER_ID) == ["payment_released"]
        async with session_factory() as session:
            events = await TransactionEventRepository(session).get_by_transaction(txn.id)
        assert [e.event_type for e in events] == ["payment_succeeded", "funds_released"]

    @pytest.mark.asyncio
    async def test_only_buyer_may_release(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        with pytest.raises(NotTransactionParticipantError):
            await release_service.release(txn.id, SELLER_ID)

    @pytest.mark.asyncio
    async def test_release_twice(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.release(txn.id, BUYER_ID)

        with pytest.raises(InvalidStateTransitionError):
            await release_service.release(txn.id, BUYER_ID)
        assert len(gateway.transfers) == 1

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, release_service) -> None:
        with pytest.raises(TransactionNotFoundError):
            await release_service.release(uuid.uuid4(), BUYER_ID)

    @pytest.mark.asyncio
    async def test_release_due(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)

        assert await release_service.release_due(now=NOW + timedelta(days=3)) == []
        released = await release_service.release_due(
            now=NOW + timedelta(days=settings.escrow_hold_days, seconds=1)
        )

        assert released == [txn.id]
        async with session_factory() as session:
            row = await TransactionRepository(session).get_by_id(txn.id)
        assert row.status == TransactionStatus.COMPLETED


class TestReleaseWithoutPayoutAccount:
    @pytest.mark.asyncio
    async def test_release_needs_payout_account(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        with pytest.raises(SellerPayoutNotReadyError):
            await release_service.release(txn.id, BUYER_ID)

    @pytest.mark.asyncio
    async def test_release_due_skips_failures(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        await _settled(session_factory, gateway, settings, listing)
        released = await release_service.release_due(now=NOW + timedelta(days=30))
        assert released == []


class TestRefunds:
    @pytest.mark.asyncio
    async def test_full_refund_relists(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)

        refunded = await release_service.apply_refund(txn.payment_intent_id, amount_refunded=5000)

        assert refunded.status == TransactionStatus.REFUNDED
        assert refunded.refunded_amount == 5000
        async with session_factory() as session:
            row = await ListingRepository(session).get_by_id(listing.id)
        assert row.status == ListingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_partial_refund_keeps_listing_sold(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)

        refunded = await release_service.apply_refund(
            txn.payment_intent_id, amount_refunded=1000, amount=5000
        )

        assert refunded.status == TransactionStatus.PARTIALLY_REFUNDED
        async with session_factory() as session:
            row = await ListingRepository(session).get_by_id(listing.id)
        assert row.status == ListingStatus.SOLD

    @pytest.mark.asyncio
    async def test_repeated_full_refund_is_noop(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.apply_refund(txn.payment_intent_id, amount_refunded=5000)

        again = await release_service.apply_refund(txn.payment_intent_id, amount_refunded=5000)

        assert again.status == TransactionStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_unknown_intent(self, release_service) -> None:
        assert await release_service.apply_refund("pi_nowhere", amount_refunded=100) is None

    @pytest.mark.asyncio
    async def test_processor_report_of_own_refund_is_noop(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.process_refund(txn.id, SELLER_ID, amount=1500)

        again = await release_service.apply_refund(
            txn.payment_intent_id, amount_refunded=1500, amount=5000
        )

        assert again.status == TransactionStatus.PARTIALLY_REFUNDED
        assert again.refunded_amount == 1500
        async with session_factory() as session:
            events = await TransactionEventRepository(session).get_by_transaction(txn.id)
        assert [e.event_type for e in events].count("refund_completed") == 1


class TestReleaseEmails:
    @pytest.mark.asyncio
    @pytest.mark.usefixtures("seller_account")
    async def test_release_emails_both_parties(
        self, release_service, session_factory, gateway, settings, listing, email_sender
    ) -> None:
        async with session_factory() as session:
            account = await ConnectedAccountRepository(session).get_by_user_id(SELLER_ID)
            account.email = "seller@example.com"
            record = await CheckoutService(session, gateway, settings).create_payment_intent(
                listing.id, BUYER_ID, buyer_email="buyer@example.com"
            )
            await session.commit()
        gateway.set_intent_status(record.id, "succeeded")
        settled = await SettlementMaterializer(session_factory, gateway, settings=settings).settle(
            record.id, now=NOW
        )

        await release_service.release(settled.transaction.id, BUYER_ID)

        by_recipient = {to: data for to, _, data in email_sender.sent}
        assert email_sender.templates_for("seller@example.com") == ["escrow_released"]
        assert email_sender.templates_for("buyer@example.com") == ["escrow_released"]
        assert by_recipient["seller@example.com"]["recipient_type"] == "seller"
        assert by_recipient["buyer@example.com"]["recipient_type"] == "buyer"
        assert by_recipient["seller@example.com"]["listing_title"] == listing.title
        assert by_recipient["seller@example.com"]["amount"] == 4750


class TestRefundRequests:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("actor", "told"), [(BUYER_ID, SELLER_ID), (SELLER_ID, BUYER_ID)])
    async def test_either_party_may_ask(
        self, release_service, session_factory, gateway, settings, listing, notifier, actor, told
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        notifier.sent.clear()

        event = await release_service.request_refund(txn.id, actor, "Item not as described")

        assert event.event_type == "refund_requested"
        assert event.actor_id == actor
        assert event.old_status == event.new_status == TransactionStatus.PAYMENT_HELD
        assert event.payload == {"reason": "Item not as described", "amount": 5000, "full": True}
        assert notifier.types_for(told) == ["refund_requested"]
        async with session_factory() as session:
            row = await TransactionRepository(session).get_by_id(txn.id)
        assert row.status == TransactionStatus.PAYMENT_HELD
        assert gateway.refunds == {}

    @pytest.mark.asyncio
    async def test_outsider_cannot_ask(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        with pytest.raises(NotTransactionParticipantError):
            await release_service.request_refund(txn.id, "someone-else", "Changed my mind")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, 5001])
    async def test_amount_must_fit(
        self, release_service, session_factory, gateway, settings, listing, amount
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        with pytest.raises(RefundValidationError):
            await release_service.request_refund(txn.id, BUYER_ID, "Damaged", amount=amount)

    @pytest.mark.asyncio
    async def test_refunded_transaction_cannot_be_asked_again(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.process_refund(txn.id, SELLER_ID)

        with pytest.raises(InvalidStateTransitionError):
            await release_service.request_refund(txn.id, BUYER_ID, "Again")


class TestProcessRefund:
    @pytest.mark.asyncio
    async def test_full_refund_through_processor(
        self, release_service, session_factory, gateway, settings, listing, notifier
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        notifier.sent.clear()

        refunded = await release_service.process_refund(txn.id, SELLER_ID)

        assert refunded.status == TransactionStatus.REFUNDED
        assert refunded.refunded_amount == 5000
        refund = gateway.refunds[refund_idempotency_key(txn.id, 5000)]
        assert refund["payment_intent_id"] == txn.payment_intent_id
        assert refund["amount"] == 5000
        assert notifier.types_for(BUYER_ID) == ["refund_processed"]
        assert notifier.types_for(SELLER_ID) == ["refund_processed"]
        async with session_factory() as session:
            relisted = await ListingRepository(session).get_by_id(listing.id)
            events = await TransactionEventRepository(session).get_by_transaction(txn.id)
        assert relisted.status == ListingStatus.ACTIVE
        assert events[-1].event_type == "refund_completed"
        assert events[-1].actor_id == SELLER_ID
        assert events[-1].payload["refund_id"] == refund["id"]

    @pytest.mark.asyncio
    async def test_partial_refunds_accumulate(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)

        first = await release_service.process_refund(txn.id, SELLER_ID, amount=1000)
        second = await release_service.process_refund(txn.id, SELLER_ID, amount=1500)

        assert first.status == TransactionStatus.PARTIALLY_REFUNDED
        assert second.status == TransactionStatus.PARTIALLY_REFUNDED
        assert second.refunded_amount == 2500
        assert gateway.refunded_total(txn.payment_intent_id) == 2500
        async with session_factory() as session:
            still_sold = await ListingRepository(session).get_by_id(listing.id)
        assert still_sold.status == ListingStatus.SOLD

        rest = await release_service.process_refund(txn.id, SELLER_ID)
        assert rest.status == TransactionStatus.REFUNDED
        assert rest.refunded_amount == 5000
        assert gateway.refunded_total(txn.payment_intent_id) == 5000

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("seller_account")
    async def test_refund_after_release(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.release(txn.id, BUYER_ID)

        refunded = await release_service.process_refund(txn.id, SELLER_ID, amount=500)

        assert refunded.status == TransactionStatus.PARTIALLY_REFUNDED

    @pytest.mark.asyncio
    async def test_only_seller_processes(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        with pytest.raises(NotTransactionParticipantError):
            await release_service.process_refund(txn.id, BUYER_ID)
        assert gateway.refunds == {}

    @pytest.mark.asyncio
    async def test_cannot_refund_more_than_left(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.process_refund(txn.id, SELLER_ID, amount=4000)

        with pytest.raises(RefundValidationError):
            await release_service.process_refund(txn.id, SELLER_ID, amount=1001)
        assert gateway.refunded_total(txn.payment_intent_id) == 4000


class TestDisputes:
    @pytest.mark.asyncio
    async def test_dispute_freezes_held_payment(
        self, release_service, session_factory, gateway, settings, listing, notifier
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        notifier.sent.clear()

        disputed = await release_service.open_dispute(
            txn.payment_intent_id, reason="fraudulent", dispute_id="dp_1"
        )

        assert disputed.status == TransactionStatus.DISPUTED
        assert notifier.types_for(SELLER_ID) == ["payment_disputed"]
        async with session_factory() as session:
            events = await TransactionEventRepository(session).get_by_transaction(txn.id)
        assert events[-1].event_type == "dispute_opened"
        assert events[-1].payload == {"reason": "fraudulent", "dispute_id": "dp_1"}

        # a disputed payment is never auto-released
        released = await release_service.release_due(now=NOW + timedelta(days=30))
        assert released == []

    @pytest.mark.asyncio
    async def test_disputed_payment_can_be_refunded(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.open_dispute(txn.payment_intent_id)

        refunded = await release_service.apply_refund(txn.payment_intent_id, amount_refunded=5000)

        assert refunded.status == TransactionStatus.REFUNDED

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("seller_account")
    async def test_released_transaction_is_left_alone(
        self, release_service, session_factory, gateway, settings, listing
    ) -> None:
        txn = await _settled(session_factory, gateway, settings, listing)
        await release_service.release(txn.id, BUYER_ID)

        result = await release_service.open_dispute(txn.payment_intent_id)

        assert result.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_intent(self, release_service) -> None:
        assert await release_service.open_dispute("pi_nowhere") is None
