"""Test constants, side-effect doubles and small builders shared by the suite."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING

from marketplace_escrow.domain.exceptions import EmailSendError, NotificationDispatchError
from marketplace_escrow.domain.gateway_protocol import IntentMetadata
from marketplace_escrow.domain.money import compute_fee_split

if TYPE_CHECKING:
    from marketplace_escrow.infrastructure.database.orm_models import Listing

SELLER_ID = "seller-1"
BUYER_ID = "buyer-1"
OTHER_BUYER_ID = "buyer-2"
SELLER_ACCOUNT_ID = "acct_seller_1"
LISTING_PRICE = 5000


# ---------------------------------------------------------------------------
# Side-effect doubles
# ---------------------------------------------------------------------------


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    async def notify(self, user_id: str, notification_type: str, payload: dict) -> None:
        self.sent.append((user_id, str(notification_type), payload))

    def types_for(self, user_id: str) -> list[str]:
        return [t for uid, t, _ in self.sent if uid == user_id]


class FailingNotifier:
    async def notify(self, user_id: str, notification_type: str, payload: dict) -> None:
        raise NotificationDispatchError(user_id, str(notification_type), "inbox down")


class HangingNotifier:
    async def notify(self, user_id: str, notification_type: str, payload: dict) -> None:
        await asyncio.sleep(30)


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    async def send(self, recipient: str, template: str, template_data: dict) -> None:
        self.sent.append((recipient, str(template), template_data))

    def templates_for(self, recipient: str) -> list[str]:
        return [t for to, t, _ in self.sent if to == recipient]


class FailingEmailSender:
    async def send(self, recipient: str, template: str, template_data: dict) -> None:
        raise EmailSendError(recipient, "provider returned 500")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_intent_metadata(
    listing: Listing,
    payment_intent_id: str = "pi_test_1",
    buyer_id: str = BUYER_ID,
    amount: int = LISTING_PRICE,
    offer_id: str | None = None,
    buyer_email: str | None = "buyer@example.com",
) -> IntentMetadata:
    split = compute_fee_split(amount, Decimal("5.0"))
    return IntentMetadata(
        payment_intent_id=payment_intent_id,
        listing_id=str(listing.id),
        buyer_id=buyer_id,
        seller_id=listing.seller_id,
        amount=split.gross,
        platform_fee=split.platform_fee,
        seller_receives=split.seller_receives,
        offer_id=offer_id,
        buyer_email=buyer_email,
    )
