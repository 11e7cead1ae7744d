"""Expiration sweep for overdue pending offers.

One batch compare-and-swap UPDATE moves every overdue pending offer to
expired, one `expired` event is written per offer, and the batch commits.
Buyer notifications and expiry emails are sent afterwards, best effort.

Running the sweep twice is the same as running it once, and it is safe
against a buyer accepting or cancelling the same offer concurrently: both
sides are conditional on status = pending, so exactly one wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import EmailTemplate, NotificationType, OfferEventType
from marketplace_escrow.infrastructure.database.repositories import (
    ListingRepository,
    OfferEventRepository,
    OfferRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.side_effects import SideEffectOutbox

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.domain.gateway_protocol import EmailSender, NotificationDispatcher

logger = get_logger(__name__)


@dataclass
class SweepResult:
    expired_offer_ids: list[uuid.UUID] = field(default_factory=list)
    buyer_ids: list[str] = field(default_factory=list)

    @property
    def expired_count(self) -> int:
        return len(self.expired_offer_ids)


class ExpirationSweeper:
    """Expires overdue offers. Invoked by cron through the HTTP API."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: NotificationDispatcher | None = None,
        settings: Settings | None = None,
        email_sender: EmailSender | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._notifier = notifier
        self._email_sender = email_sender

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or datetime.now(UTC)

        async with self._session_factory() as session:
            expired = await OfferRepository(session).expire_due(now)
            events = OfferEventRepository(session)
            for row in expired:
                await events.record(
                    offer_id=row.offer_id,
                    event_type=OfferEventType.EXPIRED,
                    actor_id="SYSTEM",
                    payload={"expired_at": now.isoformat()},
                    created_at=now,
                )
            await session.commit()

            listings = ListingRepository(session)
            titles: dict[uuid.UUID, str] = {}
            for listing_id in {row.listing_id for row in expired}:
                listing = await listings.get_by_id(listing_id)
                titles[listing_id] = listing.title if listing is not None else ""

        offers_by_buyer: dict[str, list[str]] = {}
        for row in expired:
            offers_by_buyer.setdefault(row.buyer_id, []).append(str(row.offer_id))

        result = SweepResult(
            expired_offer_ids=[row.offer_id for row in expired],
            buyer_ids=list(offers_by_buyer),
        )
        logger.info(
            "sweep.completed",
            expired=result.expired_count,
            buyers=len(result.buyer_ids),
        )

        outbox = SideEffectOutbox(
            self._notifier, self._email_sender, self._settings.side_effect_timeout_seconds
        )
        # one notification per buyer, one email per offer
        for buyer_id, offer_ids in offers_by_buyer.items():
            outbox.notify(
                buyer_id,
                NotificationType.OFFER_EXPIRED,
                {"offer_id": offer_ids[0], "offer_ids": offer_ids},
            )
        for row in expired:
            outbox.email(
                row.buyer_email,
                EmailTemplate.OFFER_EXPIRED,
                {
                    "offer_id": str(row.offer_id),
                    "listing_id": str(row.listing_id),
                    "listing_title": titles.get(row.listing_id, ""),
                    "amount": row.amount,
                    "offer_url": f"{self._settings.app_base_url}/offers/{row.offer_id}",
                },
            )
        await outbox.flush()
        return result
