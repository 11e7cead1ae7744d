"""Offer Service — negotiation lifecycle for offers on a listing.

Coordinates between:
    - Domain state machine (transition guard against the loaded row)
    - OfferRepository compare-and-swap updates (the actual race arbiter)
    - Offer event log (one event per transition)
    - Side-effect outbox (notifications and emails for the other party)

Roles: the maker of an initial offer is the buyer and the seller responds;
for a counter offer the seller is the maker and the buyer responds.

Every method works inside the caller's session and never commits. Side
effects are queued, and the caller sends them with dispatch_notifications()
once its commit has succeeded.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import (
    EmailTemplate,
    ListingStatus,
    NotificationType,
    OfferEventType,
    OfferStatus,
    OfferType,
)
from marketplace_escrow.domain.exceptions import (
    InvalidStateTransitionError,
    ListingNotFoundError,
    ListingUnavailableError,
    NotOfferParticipantError,
    OfferExtensionOutOfRangeError,
    OfferNotFoundError,
    OfferValidationError,
)
from marketplace_escrow.domain.state_machine import OfferStateMachine
from marketplace_escrow.infrastructure.database.orm_models import Offer
from marketplace_escrow.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    ListingRepository,
    OfferEventRepository,
    OfferRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.side_effects import SideEffectOutbox

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.gateway_protocol import EmailSender, NotificationDispatcher

    from marketplace_escrow.infrastructure.database.orm_models import Listing, OfferEvent

logger = get_logger(__name__)

AUTO_REJECT_MESSAGE = "Another offer was accepted"


def _snapshot(offer: Offer) -> dict:
    """Terms recorded in an offer event payload."""
    return {
        "amount": offer.amount,
        "includes_transport": offer.includes_transport,
        "includes_inspection": offer.includes_inspection,
        "expires_at": offer.expires_at.isoformat() if offer.expires_at else None,
    }


class OfferService:
    """Manages the offer negotiation lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        notifier: NotificationDispatcher | None = None,
        email_sender: EmailSender | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._offer_repo = OfferRepository(session)
        self._event_repo = OfferEventRepository(session)
        self._listing_repo = ListingRepository(session)
        self._outbox = SideEffectOutbox(
            notifier, email_sender, self._settings.side_effect_timeout_seconds
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        listing_id: uuid.UUID,
        buyer_id: str,
        amount: int,
        message: str | None = None,
        contingencies: list[str] | None = None,
        includes_transport: bool = False,
        includes_inspection: bool = False,
        expires_in_days: int | None = None,
        buyer_email: str | None = None,
        now: datetime | None = None,
    ) -> Offer:
        """Create a pending offer from a buyer on an active listing."""
        now = now or datetime.now(UTC)
        listing = await self._get_listing_or_raise(listing_id)

        if listing.status != ListingStatus.ACTIVE:
            raise ListingUnavailableError(str(listing_id), listing.status)
        if listing.seller_id == buyer_id:
            raise OfferValidationError("You cannot make an offer on your own listing")
        self._validate_amount(amount)
        days = self._validate_expiry_days(expires_in_days)

        offer = await self._offer_repo.create(
            Offer(
                listing_id=listing.id,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                buyer_email=buyer_email,
                amount=amount,
                message=message,
                contingencies=contingencies,
                includes_transport=includes_transport,
                includes_inspection=includes_inspection,
                offer_type=OfferType.INITIAL.value,
                status=OfferStatus.PENDING.value,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(days=days),
            )
        )
        await self._event_repo.record(
            offer_id=offer.id,
            event_type=OfferEventType.CREATED,
            actor_id=buyer_id,
            payload=_snapshot(offer),
            created_at=now,
        )

        logger.info(
            "offer.created",
            offer_id=str(offer.id),
            listing_id=str(listing_id),
            amount=amount,
            expires_in_days=days,
        )

        payload = self._payload(offer, listing)
        self._outbox.notify(listing.seller_id, NotificationType.OFFER_RECEIVED, payload)
        self._outbox.email(
            await self._email_for(offer, listing.seller_id),
            EmailTemplate.OFFER_RECEIVED,
            {**payload, "message": message, "offer_url": self._offer_url(offer)},
        )
        return offer

    # ------------------------------------------------------------------
    # Responder actions
    # ------------------------------------------------------------------

    async def accept_offer(
        self,
        offer_id: uuid.UUID,
        actor_id: str,
        message: str | None = None,
        now: datetime | None = None,
    ) -> Offer:
        """Accept a pending offer.

        The listing moves ACTIVE -> PENDING (awaiting payment) and every other
        pending offer on it is rejected.
        """
        now = now or datetime.now(UTC)
        offer = await self._get_offer_or_raise(offer_id)
        self._require_actor(offer, actor_id, offer.responder_id, "accept")
        self._guard(offer, "accept", OfferStatus.ACCEPTED, now)
        listing = await self._get_listing_or_raise(offer.listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise ListingUnavailableError(str(listing.id), listing.status)

        offer = await self._transition(
            offer,
            "accept",
            OfferStatus.ACCEPTED,
            now,
            responded_at=now,
            response_message=message,
        )
        await self._event_repo.record(
            offer_id=offer.id,
            event_type=OfferEventType.ACCEPTED,
            actor_id=actor_id,
            payload=_snapshot(offer),
            created_at=now,
        )

        moved = await self._listing_repo.compare_and_set_status(
            listing.id, [ListingStatus.ACTIVE], ListingStatus.PENDING
        )
        if not moved:
            current = await self._listing_repo.get_by_id(listing.id, refresh=True)
            raise ListingUnavailableError(str(listing.id), current.status if current else "missing")

        rejected = await self._offer_repo.reject_pending_for_listing(
            listing.id, now, AUTO_REJECT_MESSAGE, exclude_offer_id=offer.id
        )
        for rejected_id, _buyer_id in rejected:
            await self._event_repo.record(
                offer_id=rejected_id,
                event_type=OfferEventType.REJECTED,
                actor_id="SYSTEM",
                payload={"reason": AUTO_REJECT_MESSAGE, "accepted_offer_id": str(offer.id)},
                created_at=now,
            )

        logger.info(
            "offer.accepted",
            offer_id=str(offer_id),
            listing_id=str(listing.id),
            amount=offer.amount,
            auto_rejected=len(rejected),
        )

        payload = self._payload(offer, listing)
        template_data = {**payload, "message": message}
        if offer.maker_id == offer.buyer_id:
            template_data["checkout_url"] = f"{self._settings.app_base_url}/checkout/{offer.id}"
        self._outbox.notify(offer.maker_id, NotificationType.OFFER_ACCEPTED, payload)
        self._outbox.email(
            await self._email_for(offer, offer.maker_id),
            EmailTemplate.OFFER_ACCEPTED,
            template_data,
        )
        for rejected_id, buyer_id in rejected:
            self._outbox.notify(
                buyer_id,
                NotificationType.OFFER_REJECTED,
                {
                    "offer_id": str(rejected_id),
                    "listing_id": str(listing.id),
                    "listing_title": listing.title,
                    "reason": AUTO_REJECT_MESSAGE,
                },
            )
        return offer

    async def reject_offer(
        self,
        offer_id: uuid.UUID,
        actor_id: str,
        message: str | None = None,
        now: datetime | None = None,
    ) -> Offer:
        now = now or datetime.now(UTC)
        offer = await self._get_offer_or_raise(offer_id)
        self._require_actor(offer, actor_id, offer.responder_id, "reject")

        offer = await self._transition(
            offer,
            "reject",
            OfferStatus.REJECTED,
            now,
            responded_at=now,
            response_message=message,
        )
        await self._event_repo.record(
            offer_id=offer.id,
            event_type=OfferEventType.REJECTED,
            actor_id=actor_id,
            payload={**_snapshot(offer), "message": message},
            created_at=now,
        )

        logger.info("offer.rejected", offer_id=str(offer_id), by=actor_id)

        listing = await self._get_listing_or_raise(offer.listing_id)
        payload = self._payload(offer, listing)
        self._outbox.notify(offer.maker_id, NotificationType.OFFER_REJECTED, payload)
        self._outbox.email(
            await self._email_for(offer, offer.maker_id),
            EmailTemplate.OFFER_REJECTED,
            {
                **payload,
                "message": message,
                "listing_url": f"{self._settings.app_base_url}/listings/{listing.id}",
            },
        )
        return offer

    async def counter_offer(
        self,
        offer_id: uuid.UUID,
        actor_id: str,
        amount: int,
        message: str | None = None,
        expires_in_days: int | None = None,
        now: datetime | None = None,
    ) -> tuple[Offer, Offer]:
        """Counter a pending offer with new terms.

        The original offer becomes `countered` and carries the counter amount;
        a new pending offer with those terms is opened for the other party,
        linked through parent_offer_id.

        Returns:
            (original offer, new counter offer)
        """
        now = now or datetime.now(UTC)
        offer = await self._get_offer_or_raise(offer_id)
        self._require_actor(offer, actor_id, offer.responder_id, "counter")
        self._validate_amount(amount)
        days = self._validate_expiry_days(expires_in_days)
        previous_amount = offer.amount

        offer = await self._transition(
            offer,
            "counter",
            OfferStatus.COUNTERED,
            now,
            amount=amount,
            responded_at=now,
            response_message=message,
        )
        await self._event_repo.record(
            offer_id=offer.id,
            event_type=OfferEventType.COUNTERED,
            actor_id=actor_id,
            payload={**_snapshot(offer), "previous_amount": previous_amount},
            created_at=now,
        )

        counter = await self._offer_repo.create(
            Offer(
                listing_id=offer.listing_id,
                buyer_id=offer.buyer_id,
                seller_id=offer.seller_id,
                buyer_email=offer.buyer_email,
                amount=amount,
                message=message,
                contingencies=offer.contingencies,
                includes_transport=offer.includes_transport,
                includes_inspection=offer.includes_inspection,
                offer_type=(
                    OfferType.COUNTER.value if actor_id == offer.seller_id else OfferType.INITIAL.value
                ),
                parent_offer_id=offer.id,
                status=OfferStatus.PENDING.value,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(days=days),
            )
        )
        await self._event_repo.record(
            offer_id=counter.id,
            event_type=OfferEventType.CREATED,
            actor_id=actor_id,
            payload={**_snapshot(counter), "parent_offer_id": str(offer.id)},
            created_at=now,
        )

        logger.info(
            "offer.countered",
            offer_id=str(offer_id),
            counter_offer_id=str(counter.id),
            previous_amount=previous_amount,
            amount=amount,
        )

        listing = await self._get_listing_or_raise(offer.listing_id)
        payload = {**self._payload(counter, listing), "previous_amount": previous_amount}
        self._outbox.notify(counter.responder_id, NotificationType.OFFER_COUNTERED, payload)
        self._outbox.email(
            await self._email_for(counter, counter.responder_id),
            EmailTemplate.COUNTER_OFFER,
            {**payload, "message": message, "offer_url": self._offer_url(counter)},
        )
        return offer, counter

    # ------------------------------------------------------------------
    # Maker actions
    # ------------------------------------------------------------------

    async def cancel_offer(
        self,
        offer_id: uuid.UUID,
        actor_id: str,
        now: datetime | None = None,
    ) -> Offer:
        now = now or datetime.now(UTC)
        offer = await self._get_offer_or_raise(offer_id)
        self._require_actor(offer, actor_id, offer.maker_id, "cancel")

        offer = await self._transition(offer, "cancel", OfferStatus.CANCELLED, now)
        await self._event_repo.record(
            offer_id=offer.id,
            event_type=OfferEventType.CANCELLED,
            actor_id=actor_id,
            payload=_snapshot(offer),
            created_at=now,
        )

        logger.info("offer.cancelled", offer_id=str(offer_id), by=actor_id)
        return offer

    async def extend_offer(
        self,
        offer_id: uuid.UUID,
        actor_id: str,
        additional_days: int,
        now: datetime | None = None,
    ) -> Offer:
        """Re-open an expired offer with a new expiry. Amount and terms are unchanged."""
        now = now or datetime.now(UTC)
        min_days = self._settings.offer_extension_min_days
        max_days = self._settings.offer_extension_max_days
        if not min_days <= additional_days <= max_days:
            raise OfferExtensionOutOfRangeError(additional_days, min_days, max_days)

        offer = await self._get_offer_or_raise(offer_id)
        self._require_actor(offer, actor_id, offer.maker_id, "extend")
        previous_expiry = offer.expires_at

        offer = await self._transition(
            offer,
            "extend",
            OfferStatus.PENDING,
            now,
            expires_at=now + timedelta(days=additional_days),
        )
        await self._event_repo.record(
            offer_id=offer.id,
            event_type=OfferEventType.EXTENDED,
            actor_id=actor_id,
            payload={
                **_snapshot(offer),
                "additional_days": additional_days,
                "previous_expires_at": previous_expiry.isoformat(),
            },
            created_at=now,
        )

        logger.info(
            "offer.extended",
            offer_id=str(offer_id),
            additional_days=additional_days,
            expires_at=offer.expires_at.isoformat(),
        )
        return offer

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def dispatch_notifications(self) -> int:
        """Send the notifications and emails queued by the calls so far.

        Call only after the session has committed. Best effort: failures are
        logged and never raised. Returns how many were delivered.
        """
        return await self._outbox.flush()

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_offer(self, offer_id: uuid.UUID) -> Offer:
        """Get an offer or raise."""
        return await self._get_offer_or_raise(offer_id)

    async def get_status(self, offer_id: uuid.UUID) -> dict:
        """Get offer status with allowed events."""
        offer = await self._get_offer_or_raise(offer_id)
        sm = OfferStateMachine(current_status=offer.status)
        return {
            "offer_id": offer.id,
            "status": offer.status,
            "allowed_events": sm.get_allowed_events(),
            "expires_at": offer.expires_at,
            "updated_at": offer.updated_at,
        }

    async def get_events(self, offer_id: uuid.UUID) -> list[OfferEvent]:
        """Get the offer's event log in chronological order."""
        await self._get_offer_or_raise(offer_id)
        return await self._event_repo.get_by_offer(offer_id)

    async def list_for_listing(self, listing_id: uuid.UUID) -> list[Offer]:
        await self._get_listing_or_raise(listing_id)
        return await self._offer_repo.get_by_listing(listing_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _payload(self, offer: Offer, listing: Listing) -> dict:
        return {
            "offer_id": str(offer.id),
            "listing_id": str(listing.id),
            "listing_title": listing.title,
            "amount": offer.amount,
        }

    def _offer_url(self, offer: Offer) -> str:
        return f"{self._settings.app_base_url}/offers/{offer.id}"

    async def _email_for(self, offer: Offer, user_id: str) -> str | None:
        """Known email address of a party to the offer, or None."""
        if user_id == offer.buyer_id:
            return offer.buyer_email
        account = await ConnectedAccountRepository(self._session).get_by_user_id(user_id)
        return account.email if account is not None else None

    async def _get_offer_or_raise(self, offer_id: uuid.UUID) -> Offer:
        offer = await self._offer_repo.get_by_id(offer_id)
        if offer is None:
            raise OfferNotFoundError(str(offer_id))
        return offer

    async def _get_listing_or_raise(self, listing_id: uuid.UUID) -> Listing:
        listing = await self._listing_repo.get_by_id(listing_id)
        if listing is None:
            raise ListingNotFoundError(str(listing_id))
        return listing

    async def _transition(
        self,
        offer: Offer,
        event_name: str,
        target: OfferStatus,
        now: datetime,
        **values,
    ) -> Offer:
        """Guard, then compare-and-swap the offer into `target`.

        Returns the re-read row. If another writer moved the offer first the
        CAS affects no rows and the observed status is reported.
        """
        self._guard(offer, event_name, target, now)

        swapped = await self._offer_repo.compare_and_set_status(
            offer.id, OfferStatus(offer.status), target, **values
        )
        current = await self._offer_repo.get_by_id(offer.id, refresh=True)
        if not swapped:
            logger.warning(
                "offer.cas_conflict",
                offer_id=str(offer.id),
                expected=offer.status,
                observed=current.status,
                attempted=target.value,
            )
            raise InvalidStateTransitionError(current.status, target.value)
        return current

    def _guard(self, offer: Offer, event_name: str, target: OfferStatus, now: datetime) -> None:
        if offer.status == OfferStatus.PENDING and offer.expires_at < now:
            # past its expiry but not swept yet
            raise InvalidStateTransitionError(OfferStatus.EXPIRED.value, target.value)
        self._fire_transition(offer, event_name)

    def _fire_transition(self, offer: Offer, event_name: str) -> None:
        """Validate a state machine transition against the loaded row.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        from statemachine.exceptions import TransitionNotAllowed

        sm = OfferStateMachine(current_status=offer.status)
        event_method = getattr(sm, event_name, None)
        if event_method is None:
            raise InvalidStateTransitionError(offer.status, event_name)
        try:
            event_method()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(offer.status, event_name) from err

    @staticmethod
    def _require_actor(offer: Offer, actor_id: str, expected_id: str, action: str) -> None:
        if actor_id != expected_id:
            raise NotOfferParticipantError(str(offer.id), actor_id, action)

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise OfferValidationError("Offer amount must be a positive number of minor units")

    def _validate_expiry_days(self, expires_in_days: int | None) -> int:
        days = (
            self._settings.offer_default_expiry_days if expires_in_days is None else expires_in_days
        )
        low = self._settings.offer_min_expiry_days
        high = self._settings.offer_max_expiry_days
        if not low <= days <= high:
            raise OfferValidationError(f"Offer expiry must be between {low} and {high} days")
        return days
