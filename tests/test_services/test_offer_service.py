"""Tests for the offer negotiation lifecycle (OfferService)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from marketplace_escrow.domain.enums import ListingStatus, OfferStatus, OfferType
from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    ListingNotFoundError,
    ListingUnavailableError,
    NotOfferParticipantError,
    OfferExtensionOutOfRangeError,
    OfferNotFoundError,
    OfferValidationError,
)
from marketplace_escrow.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    ListingRepository,
)
from marketplace_escrow.services.expiration_sweeper import ExpirationSweeper
from marketplace_escrow.services.offer_service import AUTO_REJECT_MESSAGE, OfferService
from tests.helpers import BUYER_ID, OTHER_BUYER_ID, SELLER_ID

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _make_offer(session, settings, listing, buyer_id=BUYER_ID, amount=4500, days=3):  # noqa: ANN001, ANN202
    offer = await OfferService(session, settings).create_offer(
        listing_id=listing.id,
        buyer_id=buyer_id,
        amount=amount,
        expires_in_days=days,
        now=NOW,
    )
    await session.commit()
    return offer


class TestCreateOffer:
    @pytest.mark.asyncio
    async def test_creates_pending_offer_with_event(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)

        assert offer.status == OfferStatus.PENDING
        assert offer.offer_type == OfferType.INITIAL
        assert offer.seller_id == SELLER_ID
        assert offer.expires_at == NOW + timedelta(days=3)

        events = await OfferService(session, settings).get_events(offer.id)
        assert [e.event_type for e in events] == ["created"]
        assert events[0].actor_id == BUYER_ID

    @pytest.mark.asyncio
    async def test_default_expiry(self, session, settings, listing) -> None:
        offer = await OfferService(session, settings).create_offer(
            listing_id=listing.id, buyer_id=BUYER_ID, amount=4000, now=NOW
        )
        assert offer.expires_at == NOW + timedelta(days=settings.offer_default_expiry_days)

    @pytest.mark.asyncio
    async def test_cannot_offer_on_own_listing(self, session, settings, listing) -> None:
        with pytest.raises(OfferValidationError):
            await OfferService(session, settings).create_offer(
                listing_id=listing.id, buyer_id=SELLER_ID, amount=4000
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100])
    async def test_rejects_non_positive_amount(self, session, settings, listing, amount) -> None:
        with pytest.raises(OfferValidationError):
            await OfferService(session, settings).create_offer(
                listing_id=listing.id, buyer_id=BUYER_ID, amount=amount
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, 31])
    async def test_rejects_expiry_outside_window(self, session, settings, listing, days) -> None:
        with pytest.raises(OfferValidationError):
            await OfferService(session, settings).create_offer(
                listing_id=listing.id, buyer_id=BUYER_ID, amount=4000, expires_in_days=days
            )

    @pytest.mark.asyncio
    async def test_listing_must_be_active(self, session, settings, listing) -> None:
        await ListingRepository(session).compare_and_set_status(
            listing.id, [ListingStatus.ACTIVE], ListingStatus.SOLD
        )
        await session.commit()
        with pytest.raises(ListingUnavailableError):
            await OfferService(session, settings).create_offer(
                listing_id=listing.id, buyer_id=BUYER_ID, amount=4000
            )

    @pytest.mark.asyncio
    async def test_unknown_listing(self, session, settings) -> None:
        import uuid

        with pytest.raises(ListingNotFoundError):
            await OfferService(session, settings).create_offer(
                listing_id=uuid.uuid4(), buyer_id=BUYER_ID, amount=4000
            )


class TestAcceptOffer:
    @pytest.mark.asyncio
    async def test_accept_moves_listing_to_pending(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        svc = OfferService(session, settings)

        accepted = await svc.accept_offer(offer.id, SELLER_ID, message="Deal", now=NOW)
        await session.commit()

        assert accepted.status == OfferStatus.ACCEPTED
        assert accepted.response_message == "Deal"
        assert accepted.responded_at == NOW
        refreshed = await ListingRepository(session).get_by_id(listing.id, refresh=True)
        assert refreshed.status == ListingStatus.PENDING

    @pytest.mark.asyncio
    async def test_accept_auto_rejects_competing_offers(self, session, settings, listing) -> None:
        winner = await _make_offer(session, settings, listing, buyer_id=BUYER_ID)
        loser = await _make_offer(session, settings, listing, buyer_id=OTHER_BUYER_ID, amount=4200)
        svc = OfferService(session, settings)

        await svc.accept_offer(winner.id, SELLER_ID, now=NOW)
        await session.commit()

        other = await svc.get_offer(loser.id)
        await session.refresh(other)
        assert other.status == OfferStatus.REJECTED
        assert other.response_message == AUTO_REJECT_MESSAGE
        events = await svc.get_events(loser.id)
        assert [e.event_type for e in events] == ["created", "rejected"]
        assert events[-1].actor_id == "SYSTEM"

    @pytest.mark.asyncio
    async def test_only_seller_may_accept_buyer_offer(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        with pytest.raises(NotOfferParticipantError):
            await OfferService(session, settings).accept_offer(offer.id, BUYER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_accept_twice_is_invalid(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        svc = OfferService(session, settings)
        await svc.accept_offer(offer.id, SELLER_ID, now=NOW)
        await session.commit()

        with pytest.raises(InvalidStateTransitionError):
            await svc.accept_offer(offer.id, SELLER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_accept_after_expiry_without_sweep(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing, days=1)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await OfferService(session, settings).accept_offer(
                offer.id, SELLER_ID, now=NOW + timedelta(days=2)
            )
        assert exc_info.value.current_state == OfferStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_offer_is_live_at_its_exact_expiry_instant(
        self, session, session_factory, settings, listing
    ) -> None:
        offer = await _make_offer(session, settings, listing, days=1)

        result = await ExpirationSweeper(session_factory, settings=settings).sweep(
            now=offer.expires_at
        )
        assert result.expired_count == 0

        accepted = await OfferService(session, settings).accept_offer(
            offer.id, SELLER_ID, now=offer.expires_at
        )
        assert accepted.status == OfferStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_accept_on_unavailable_listing(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        await ListingRepository(session).compare_and_set_status(
            listing.id, [ListingStatus.ACTIVE], ListingStatus.SOLD
        )
        await session.commit()

        with pytest.raises(ListingUnavailableError):
            await OfferService(session, settings).accept_offer(offer.id, SELLER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_offer(self, session, settings) -> None:
        import uuid

        with pytest.raises(OfferNotFoundError):
            await OfferService(session, settings).accept_offer(uuid.uuid4(), SELLER_ID)


class TestRejectAndCancel:
    @pytest.mark.asyncio
    async def test_seller_rejects(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        rejected = await OfferService(session, settings).reject_offer(
            offer.id, SELLER_ID, message="Too low", now=NOW
        )
        assert rejected.status == OfferStatus.REJECTED
        assert rejected.response_message == "Too low"

    @pytest.mark.asyncio
    async def test_buyer_cancels_own_offer(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        cancelled = await OfferService(session, settings).cancel_offer(offer.id, BUYER_ID, now=NOW)
        assert cancelled.status == OfferStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_seller_cannot_cancel_buyer_offer(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        with pytest.raises(NotOfferParticipantError):
            await OfferService(session, settings).cancel_offer(offer.id, SELLER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_closed_offer_cannot_be_rejected(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        svc = OfferService(session, settings)
        await svc.cancel_offer(offer.id, BUYER_ID, now=NOW)
        await session.commit()

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await svc.reject_offer(offer.id, SELLER_ID, now=NOW)
        assert exc_info.value.current_state == OfferStatus.CANCELLED


class TestCounterOffer:
    @pytest.mark.asyncio
    async def test_seller_counter(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing, amount=4000)

        original, counter = await OfferService(session, settings).counter_offer(
            offer.id, SELLER_ID, amount=4700, message="Meet me here", now=NOW
        )
        await session.commit()

        assert original.status == OfferStatus.COUNTERED
        assert original.amount == 4700
        assert counter.status == OfferStatus.PENDING
        assert counter.offer_type == OfferType.COUNTER
        assert counter.parent_offer_id == original.id
        assert counter.amount == 4700
        # the buyer now answers the seller's counter
        assert counter.maker_id == SELLER_ID
        assert counter.responder_id == BUYER_ID

    @pytest.mark.asyncio
    async def test_buyer_accepts_seller_counter(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing, amount=4000)
        svc = OfferService(session, settings)
        _, counter = await svc.counter_offer(offer.id, SELLER_ID, amount=4700, now=NOW)
        await session.commit()

        with pytest.raises(NotOfferParticipantError):
            await svc.accept_offer(counter.id, SELLER_ID, now=NOW)

        accepted = await svc.accept_offer(counter.id, BUYER_ID, now=NOW)
        assert accepted.status == OfferStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_buyer_counters_the_counter(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing, amount=4000)
        svc = OfferService(session, settings)
        _, counter = await svc.counter_offer(offer.id, SELLER_ID, amount=4700, now=NOW)
        _, counter_counter = await svc.counter_offer(counter.id, BUYER_ID, amount=4400, now=NOW)

        assert counter_counter.offer_type == OfferType.INITIAL
        assert counter_counter.responder_id == SELLER_ID

    @pytest.mark.asyncio
    async def test_countered_offer_is_closed(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing, amount=4000)
        svc = OfferService(session, settings)
        await svc.counter_offer(offer.id, SELLER_ID, amount=4700, now=NOW)

        with pytest.raises(InvalidStateTransitionError):
            await svc.accept_offer(offer.id, SELLER_ID, now=NOW)


class TestExtendOffer:
    async def _expired_offer(self, session, session_factory, settings, listing):  # noqa: ANN001, ANN202
        offer = await _make_offer(session, settings, listing, days=1)
        await ExpirationSweeper(session_factory, settings=settings).sweep(now=NOW + timedelta(days=2))
        await session.refresh(offer)
        assert offer.status == OfferStatus.EXPIRED
        return offer

    @pytest.mark.asyncio
    async def test_maker_extends_expired_offer(
        self, session, session_factory, settings, listing
    ) -> None:
        offer = await self._expired_offer(session, session_factory, settings, listing)
        later = NOW + timedelta(days=3)

        extended = await OfferService(session, settings).extend_offer(
            offer.id, BUYER_ID, additional_days=5, now=later
        )
        await session.commit()

        assert extended.status == OfferStatus.PENDING
        assert extended.expires_at == later + timedelta(days=5)
        assert extended.amount == offer.amount
        events = await OfferService(session, settings).get_events(offer.id)
        assert [e.event_type for e in events] == ["created", "expired", "extended"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, 15])
    async def test_out_of_range(self, session, session_factory, settings, listing, days) -> None:
        offer = await self._expired_offer(session, session_factory, settings, listing)
        with pytest.raises(OfferExtensionOutOfRangeError):
            await OfferService(session, settings).extend_offer(offer.id, BUYER_ID, days)

    @pytest.mark.asyncio
    async def test_responder_cannot_extend(
        self, session, session_factory, settings, listing
    ) -> None:
        offer = await self._expired_offer(session, session_factory, settings, listing)
        with pytest.raises(NotOfferParticipantError):
            await OfferService(session, settings).extend_offer(offer.id, SELLER_ID, 3)

    @pytest.mark.asyncio
    async def test_pending_offer_cannot_be_extended(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        with pytest.raises(InvalidStateTransitionError):
            await OfferService(session, settings).extend_offer(offer.id, BUYER_ID, 3, now=NOW)


class TestStatus:
    @pytest.mark.asyncio
    async def test_allowed_events(self, session, settings, listing) -> None:
        offer = await _make_offer(session, settings, listing)
        status = await OfferService(session, settings).get_status(offer.id)

        assert status["status"] == "pending"
        assert "accept" in status["allowed_events"]
        assert "extend" not in status["allowed_events"]

    @pytest.mark.asyncio
    async def test_list_for_listing(self, session, settings, listing) -> None:
        await _make_offer(session, settings, listing, buyer_id=BUYER_ID)
        await _make_offer(session, settings, listing, buyer_id=OTHER_BUYER_ID)
        offers = await OfferService(session, settings).list_for_listing(listing.id)
        assert {o.buyer_id for o in offers} == {BUYER_ID, OTHER_BUYER_ID}


SELLER_EMAIL = "seller@example.com"
BUYER_EMAIL = "buyer@example.com"


@pytest_asyncio.fixture
async def seller_email(session_factory, seller_account) -> str:  # noqa: ANN001
    async with session_factory() as session:
        account = await ConnectedAccountRepository(session).get_by_user_id(SELLER_ID)
        account.email = SELLER_EMAIL
        await session.commit()
    return SELLER_EMAIL


@pytest.mark.usefixtures("seller_email")
class TestOfferNotifications:
    @pytest.fixture
    def svc(self, session, settings, notifier, email_sender) -> OfferService:  # noqa: ANN001
        return OfferService(session, settings, notifier, email_sender)

    async def _offer(self, svc, session, listing, buyer_id=BUYER_ID, email=BUYER_EMAIL):  # noqa: ANN001, ANN202
        offer = await svc.create_offer(
            listing_id=listing.id,
            buyer_id=buyer_id,
            amount=4500,
            message="Can pick up this weekend",
            buyer_email=email,
            now=NOW,
        )
        await session.commit()
        await svc.dispatch_notifications()
        return offer

    @pytest.mark.asyncio
    async def test_new_offer_notifies_seller_after_dispatch(
        self, svc, session, listing, notifier, email_sender
    ) -> None:
        offer = await svc.create_offer(
            listing_id=listing.id, buyer_id=BUYER_ID, amount=4500, buyer_email=BUYER_EMAIL
        )
        await session.commit()
        assert notifier.sent == []

        assert await svc.dispatch_notifications() == 2

        assert notifier.types_for(SELLER_ID) == ["offer_received"]
        payload = notifier.sent[0][2]
        assert payload == {
            "offer_id": str(offer.id),
            "listing_id": str(listing.id),
            "listing_title": listing.title,
            "amount": 4500,
        }
        assert email_sender.templates_for(SELLER_EMAIL) == ["offer_received"]
        data = email_sender.sent[0][2]
        assert data["offer_url"].endswith(f"/offers/{offer.id}")
        assert data["message"] is None

    @pytest.mark.asyncio
    async def test_accept_notifies_buyer_and_auto_rejected(
        self, svc, session, listing, notifier, email_sender
    ) -> None:
        offer = await self._offer(svc, session, listing)
        await self._offer(svc, session, listing, buyer_id=OTHER_BUYER_ID, email=None)
        notifier.sent.clear()
        email_sender.sent.clear()

        await svc.accept_offer(offer.id, SELLER_ID, message="Deal", now=NOW)
        await session.commit()
        await svc.dispatch_notifications()

        assert notifier.types_for(BUYER_ID) == ["offer_accepted"]
        assert notifier.types_for(OTHER_BUYER_ID) == ["offer_rejected"]
        rejected_payload = next(p for uid, _, p in notifier.sent if uid == OTHER_BUYER_ID)
        assert rejected_payload["reason"] == AUTO_REJECT_MESSAGE
        assert email_sender.templates_for(BUYER_EMAIL) == ["offer_accepted"]
        data = email_sender.sent[0][2]
        assert data["checkout_url"].endswith(f"/checkout/{offer.id}")
        assert data["message"] == "Deal"
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_reject_notifies_buyer(
        self, svc, session, listing, notifier, email_sender
    ) -> None:
        offer = await self._offer(svc, session, listing)
        notifier.sent.clear()
        email_sender.sent.clear()

        await svc.reject_offer(offer.id, SELLER_ID, message="Too low", now=NOW)
        await session.commit()
        await svc.dispatch_notifications()

        assert notifier.types_for(BUYER_ID) == ["offer_rejected"]
        recipient, template, data = email_sender.sent[0]
        assert (recipient, template) == (BUYER_EMAIL, "offer_rejected")
        assert data["message"] == "Too low"
        assert data["listing_url"].endswith(f"/listings/{listing.id}")

    @pytest.mark.asyncio
    async def test_counters_notify_the_other_party(
        self, svc, session, listing, notifier, email_sender
    ) -> None:
        offer = await self._offer(svc, session, listing)
        notifier.sent.clear()
        email_sender.sent.clear()

        _, counter = await svc.counter_offer(offer.id, SELLER_ID, amount=4800, now=NOW)
        await session.commit()
        await svc.dispatch_notifications()

        assert notifier.types_for(BUYER_ID) == ["offer_countered"]
        assert notifier.sent[0][2]["previous_amount"] == 4500
        assert notifier.sent[0][2]["offer_id"] == str(counter.id)
        recipient, template, data = email_sender.sent[0]
        assert (recipient, template) == (BUYER_EMAIL, "counter_offer")
        assert data["amount"] == 4800
        assert data["offer_url"].endswith(f"/offers/{counter.id}")

        # the buyer answers the counter; now the seller is the one told
        await svc.counter_offer(counter.id, BUYER_ID, amount=4650, now=NOW)
        await session.commit()
        await svc.dispatch_notifications()

        assert notifier.types_for(SELLER_ID) == ["offer_countered"]
        assert email_sender.templates_for(SELLER_EMAIL) == ["counter_offer"]

    @pytest.mark.asyncio
    async def test_unknown_address_gets_notification_only(
        self, svc, session, listing, notifier, email_sender
    ) -> None:
        offer = await self._offer(svc, session, listing, email=None)
        email_sender.sent.clear()

        await svc.reject_offer(offer.id, SELLER_ID, now=NOW)
        await session.commit()
        await svc.dispatch_notifications()

        assert notifier.types_for(BUYER_ID) == ["offer_rejected"]
        assert email_sender.sent == []
