"""Checkout Service — payment-intent creation.

Resolves the price (accepted offer or listing price), computes the fee
split, enforces seller payout eligibility, creates the intent at the
processor and stores a local reference carrying the same metadata. The
reference is what settlement reads first; an intent that is never paid
is simply abandoned.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import ListingStatus, OfferStatus
from marketplace_escrow.domain.exceptions import (
    CheckoutError,
    ListingNotFoundError,
    ListingUnavailableError,
    OfferNotFoundError,
)
from marketplace_escrow.domain.money import compute_fee_split
from marketplace_escrow.infrastructure.database.orm_models import PaymentIntentRecord
from marketplace_escrow.infrastructure.database.repositories import (
    ListingRepository,
    OfferRepository,
    PaymentIntentRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.account_service import ConnectedAccountService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.gateway_protocol import PaymentGateway
    from marketplace_escrow.infrastructure.database.orm_models import Listing, Offer

logger = get_logger(__name__)


class CheckoutService:
    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._listing_repo = ListingRepository(session)
        self._offer_repo = OfferRepository(session)
        self._intent_repo = PaymentIntentRepository(session)
        self._accounts = ConnectedAccountService(session, gateway)

    async def create_payment_intent(
        self,
        listing_id: uuid.UUID,
        buyer_id: str,
        offer_id: uuid.UUID | None = None,
        buyer_email: str | None = None,
    ) -> PaymentIntentRecord:
        """Start a payment for a listing.

        ACTIVE listings can be bought at the listing price or an accepted
        offer's price; a PENDING listing only through its accepted offer.

        Raises:
            ListingNotFoundError / OfferNotFoundError: Unknown ids.
            ListingUnavailableError: The listing cannot be bought now.
            CheckoutError: Own listing, or the offer is not this buyer's accepted offer.
            SellerPayoutNotReadyError: The seller cannot receive funds yet.
        """
        listing = await self._listing_repo.get_by_id(listing_id)
        if listing is None:
            raise ListingNotFoundError(str(listing_id))
        if listing.seller_id == buyer_id:
            raise CheckoutError("You cannot purchase your own listing")

        offer = await self._resolve_offer(listing, buyer_id, offer_id)
        allowed = {ListingStatus.ACTIVE.value}
        if offer is not None:
            allowed.add(ListingStatus.PENDING.value)
        if listing.status not in allowed:
            raise ListingUnavailableError(str(listing_id), listing.status)

        price = offer.amount if offer is not None else listing.price
        fee_split = compute_fee_split(price, self._settings.platform_fee_percentage)

        await self._accounts.ensure_can_receive_payments(listing.seller_id)

        created = await self._gateway.create_intent(
            fee_split=fee_split,
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            listing_id=str(listing.id),
            offer_id=str(offer.id) if offer is not None else None,
            buyer_email=buyer_email,
        )
        record = await self._intent_repo.create(
            PaymentIntentRecord(
                id=created.payment_intent_id,
                listing_id=listing.id,
                offer_id=offer.id if offer is not None else None,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                buyer_email=buyer_email,
                amount=fee_split.gross,
                platform_fee=fee_split.platform_fee,
                seller_receives=fee_split.seller_receives,
                currency=self._settings.currency,
                status=created.status,
                client_secret=created.client_secret,
            )
        )

        logger.info(
            "checkout.intent_created",
            payment_intent_id=created.payment_intent_id,
            listing_id=str(listing.id),
            offer_id=str(offer.id) if offer is not None else None,
            **fee_split.to_dict(),
        )
        return record

    async def _resolve_offer(
        self,
        listing: Listing,
        buyer_id: str,
        offer_id: uuid.UUID | None,
    ) -> Offer | None:
        if offer_id is None:
            return None
        offer = await self._offer_repo.get_by_id(offer_id)
        if offer is None:
            raise OfferNotFoundError(str(offer_id))
        if (
            offer.status != OfferStatus.ACCEPTED
            or offer.listing_id != listing.id
            or offer.buyer_id != buyer_id
        ):
            raise CheckoutError("Invalid or non-accepted offer")
        return offer
