"""Tests for the offer expiration sweep and its race with accept."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from marketplace_escrow.domain.enums import ListingStatus, OfferStatus
from marketplace_escrow.domain.exceptions import InvalidStateTransitionError
from marketplace_escrow.infrastructure.database.repositories import (
    ListingRepository,
    OfferRepository,
)
from marketplace_escrow.services.expiration_sweeper import ExpirationSweeper
from marketplace_escrow.services.offer_service import OfferService
from tests.helpers import BUYER_ID, OTHER_BUYER_ID, SELLER_ID, FailingNotifier

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _offer(  # noqa: ANN202
    session_factory,  # noqa: ANN001
    settings,  # noqa: ANN001
    listing,  # noqa: ANN001
    buyer_id: str = BUYER_ID,
    days: int = 1,
    email: str | None = None,
):
    async with session_factory() as session:
        offer = await OfferService(session, settings).create_offer(
            listing_id=listing.id,
            buyer_id=buyer_id,
            amount=4500,
            expires_in_days=days,
            buyer_email=email,
            now=NOW,
        )
        await session.commit()
    return offer


class TestSweep:
    @pytest.mark.asyncio
    async def test_expires_only_overdue_pending_offers(
        self, session_factory, settings, listing, notifier
    ) -> None:
        due = await _offer(session_factory, settings, listing, days=1)
        not_due = await _offer(session_factory, settings, listing, buyer_id=OTHER_BUYER_ID, days=5)

        result = await ExpirationSweeper(session_factory, notifier, settings).sweep(
            now=NOW + timedelta(days=2)
        )

        assert result.expired_offer_ids == [due.id]
        assert result.buyer_ids == [BUYER_ID]
        async with session_factory() as session:
            repo = OfferRepository(session)
            assert (await repo.get_by_id(due.id)).status == OfferStatus.EXPIRED
            assert (await repo.get_by_id(not_due.id)).status == OfferStatus.PENDING
            events = await OfferService(session, settings).get_events(due.id)
        assert [e.event_type for e in events] == ["created", "expired"]
        assert events[-1].actor_id == "SYSTEM"
        assert notifier.sent == [
            (BUYER_ID, "offer_expired", {"offer_id": str(due.id), "offer_ids": [str(due.id)]})
        ]

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, session_factory, settings, listing, notifier) -> None:
        await _offer(session_factory, settings, listing)
        sweeper = ExpirationSweeper(session_factory, notifier, settings)
        later = NOW + timedelta(days=2)

        first = await sweeper.sweep(now=later)
        second = await sweeper.sweep(now=later)

        assert first.expired_count == 1
        assert second.expired_count == 0
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_one_notification_per_buyer(
        self, session_factory, settings, listing, notifier
    ) -> None:
        await _offer(session_factory, settings, listing)
        await _offer(session_factory, settings, listing)

        result = await ExpirationSweeper(session_factory, notifier, settings).sweep(
            now=NOW + timedelta(days=2)
        )

        assert result.expired_count == 2
        assert len(notifier.sent) == 1
        assert len(notifier.sent[0][2]["offer_ids"]) == 2

    @pytest.mark.asyncio
    async def test_emails_each_expired_offer_with_known_address(
        self, session_factory, settings, listing, email_sender
    ) -> None:
        emailed = await _offer(session_factory, settings, listing, email="buyer@example.com")
        await _offer(session_factory, settings, listing, buyer_id=OTHER_BUYER_ID)

        result = await ExpirationSweeper(
            session_factory, settings=settings, email_sender=email_sender
        ).sweep(now=NOW + timedelta(days=2))

        assert result.expired_count == 2
        assert len(email_sender.sent) == 1
        recipient, template, data = email_sender.sent[0]
        assert recipient == "buyer@example.com"
        assert template == "offer_expired"
        assert data["offer_id"] == str(emailed.id)
        assert data["listing_title"] == listing.title
        assert data["amount"] == 4500
        assert data["offer_url"].endswith(f"/offers/{emailed.id}")

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_expiry(
        self, session_factory, settings, listing
    ) -> None:
        offer = await _offer(session_factory, settings, listing)

        result = await ExpirationSweeper(session_factory, FailingNotifier(), settings).sweep(
            now=NOW + timedelta(days=2)
        )

        assert result.expired_count == 1
        async with session_factory() as session:
            assert (await OfferRepository(session).get_by_id(offer.id)).status == "expired"

    @pytest.mark.asyncio
    async def test_nothing_due(self, session_factory, settings, listing) -> None:
        await _offer(session_factory, settings, listing, days=5)
        result = await ExpirationSweeper(session_factory, settings=settings).sweep(now=NOW)
        assert result.expired_count == 0


class TestSweepAcceptRace:
    @pytest.mark.asyncio
    async def test_sweep_wins_stale_accept_fails(self, session_factory, settings, listing) -> None:
        offer = await _offer(session_factory, settings, listing)

        async with session_factory() as seller_session:
            svc = OfferService(seller_session, settings)
            # the seller's page loaded the offer while it was still pending
            assert (await svc.get_offer(offer.id)).status == OfferStatus.PENDING

            await ExpirationSweeper(session_factory, settings=settings).sweep(
                now=NOW + timedelta(days=2)
            )

            with pytest.raises(InvalidStateTransitionError) as exc_info:
                await svc.accept_offer(offer.id, SELLER_ID, now=NOW + timedelta(hours=1))
            await seller_session.rollback()

        assert exc_info.value.current_state == OfferStatus.EXPIRED
        async with session_factory() as session:
            assert (await OfferRepository(session).get_by_id(offer.id)).status == "expired"
            listing_row = await ListingRepository(session).get_by_id(listing.id)
            assert listing_row.status == ListingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_accept_wins_sweep_skips(self, session_factory, settings, listing) -> None:
        offer = await _offer(session_factory, settings, listing)

        async with session_factory() as session:
            await OfferService(session, settings).accept_offer(
                offer.id, SELLER_ID, now=NOW + timedelta(hours=1)
            )
            await session.commit()

        result = await ExpirationSweeper(session_factory, settings=settings).sweep(
            now=NOW + timedelta(days=2)
        )

        assert result.expired_count == 0
        async with session_factory() as session:
            assert (await OfferRepository(session).get_by_id(offer.id)).status == "accepted"
