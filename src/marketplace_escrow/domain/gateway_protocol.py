"""Collaborator Protocols for the settlement core.

Defines the interfaces of the external collaborators this engine calls:
the payment processor, the notification dispatcher and the email sender.
They are Protocols (structural subtyping) so concrete adapters don't need
to inherit from a base class (they only need to match the shape), and
tests can pass in-memory fakes that replay duplicate or concurrent
processor callbacks deterministically.

The domain layer has ZERO imports from Stripe, httpx or the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from marketplace_escrow.domain.money import FeeSplit


@dataclass(frozen=True)
class IntentMetadata:
    """Metadata captured on a payment intent when checkout created it.

    Attributes:
        payment_intent_id: The processor's charge-intent identifier.
        listing_id / buyer_id / seller_id: Parties and item, as strings.
        amount: Gross charge in minor units.
        platform_fee: Platform share in minor units.
        seller_receives: Seller share in minor units.
        offer_id: Accepted offer the price came from, if any.
        buyer_email: Where to send the payment confirmation, if known.
    """

    payment_intent_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: int
    platform_fee: int
    seller_receives: int
    offer_id: str | None = None
    buyer_email: str | None = None

    def reconciles(self) -> bool:
        return self.platform_fee + self.seller_receives == self.amount

    def to_processor_metadata(self) -> dict[str, str]:
        """Flatten to the string-only key/value map processors accept."""
        return {
            "listing_id": self.listing_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "offer_id": self.offer_id or "",
            "buyer_email": self.buyer_email or "",
            "final_price_cents": str(self.amount),
            "platform_fee_cents": str(self.platform_fee),
            "seller_receives_cents": str(self.seller_receives),
        }

    @classmethod
    def from_processor_metadata(
        cls, payment_intent_id: str, metadata: dict[str, Any]
    ) -> IntentMetadata | None:
        """Rebuild from processor metadata. Returns None if a money key is absent."""
        try:
            return cls(
                payment_intent_id=payment_intent_id,
                listing_id=str(metadata["listing_id"]),
                buyer_id=str(metadata["buyer_id"]),
                seller_id=str(metadata["seller_id"]),
                amount=int(metadata["final_price_cents"]),
                platform_fee=int(metadata["platform_fee_cents"]),
                seller_receives=int(metadata["seller_receives_cents"]),
                offer_id=metadata.get("offer_id") or None,
                buyer_email=metadata.get("buyer_email") or None,
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class CreatedIntent:
    """Result of creating a payment intent at the processor."""

    payment_intent_id: str
    client_secret: str
    status: str


@dataclass(frozen=True)
class AccountStatus:
    """Payout-account flags as reported by the processor."""

    account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False

    @property
    def fully_set_up(self) -> bool:
        return self.charges_enabled and self.payouts_enabled and self.details_submitted


@dataclass(frozen=True)
class ProcessorEvent:
    """A verified webhook event from the payment processor."""

    id: str
    type: str
    data: dict = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    """Interface to the external payment processor.

    Every call may fail after having been applied (at-least-once), which is
    why settlement is idempotent and transfers and refunds carry idempotency
    keys. create_refund with amount=None refunds whatever is left on the charge.
    """

    async def create_intent(
        self,
        fee_split: FeeSplit,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        offer_id: str | None = None,
        buyer_email: str | None = None,
    ) -> CreatedIntent: ...

    async def get_intent_metadata(self, payment_intent_id: str) -> IntentMetadata | None: ...

    async def get_intent_status(self, payment_intent_id: str) -> str: ...

    def construct_event(self, payload: bytes, signature: str | None) -> ProcessorEvent: ...

    async def create_account(self, email: str | None = None) -> AccountStatus: ...

    async def retrieve_account(self, account_id: str) -> AccountStatus: ...

    async def create_transfer(
        self,
        amount: int,
        destination_account_id: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> str: ...

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: int | None,
        idempotency_key: str,
        reason: str = "requested_by_customer",
        metadata: dict[str, str] | None = None,
    ) -> str: ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Fire-and-forget in-app notifications.

    Raises NotificationDispatchError on failure; callers log and swallow it.
    """

    async def notify(self, user_id: str, notification_type: str, payload: dict) -> None: ...


@runtime_checkable
class EmailSender(Protocol):
    """Fire-and-forget transactional email.

    Raises EmailSendError on failure; callers log and swallow it.
    """

    async def send(self, recipient: str, template: str, template_data: dict) -> None: ...
