"""Domain enumerations for the marketplace escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class OfferStatus(enum.StrEnum):
    """Lifecycle states of an offer.

    Transitions are enforced by OfferStateMachine (domain/state_machine.py)
    and applied as compare-and-swap updates on the current status.
    """

    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        # expired is terminal but may be re-opened by an explicit extension
        return self in TERMINAL_OFFER_STATUSES


TERMINAL_OFFER_STATUSES = frozenset(
    {OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.EXPIRED, OfferStatus.CANCELLED}
)


class OfferType(enum.StrEnum):
    """Who made the offer: the buyer (initial) or the seller (counter)."""

    INITIAL = "initial"
    COUNTER = "counter"


class OfferEventType(enum.StrEnum):
    """Types of records in the append-only offer_events table.

    Every offer transition produces exactly one event.
    """

    CREATED = "created"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    EXTENDED = "extended"


class TransactionStatus(enum.StrEnum):
    """Lifecycle states of a settled transaction."""

    PENDING = "pending"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_HELD = "payment_held"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


# A listing may have at most one transaction in one of these states.
OPEN_TRANSACTION_STATUSES = frozenset(
    {
        TransactionStatus.PENDING,
        TransactionStatus.PAYMENT_PROCESSING,
        TransactionStatus.PAYMENT_HELD,
        TransactionStatus.DISPUTED,
    }
)


class TransactionEventType(enum.StrEnum):
    """Types of records in the append-only transaction_events table."""

    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    FUNDS_RELEASED = "funds_released"
    REFUND_REQUESTED = "refund_requested"
    REFUND_COMPLETED = "refund_completed"
    DUPLICATE_PAYMENT_REFUNDED = "duplicate_payment_refunded"
    DISPUTE_OPENED = "dispute_opened"


class ListingStatus(enum.StrEnum):
    """Status of a listing. This core only moves ACTIVE/PENDING/SOLD."""

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    SOLD = "SOLD"
    REMOVED = "REMOVED"


class SettlementTrigger(enum.StrEnum):
    """Entry point that asked for a settlement."""

    WEBHOOK = "webhook"
    REDIRECT = "redirect"


class NotificationType(enum.StrEnum):
    """In-app notification types emitted by this core."""

    OFFER_RECEIVED = "offer_received"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    OFFER_COUNTERED = "offer_countered"
    OFFER_EXPIRED = "offer_expired"
    SALE_COMPLETED = "sale_completed"
    PURCHASE_COMPLETED = "purchase_completed"
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_DISPUTED = "payment_disputed"
    REFUND_REQUESTED = "refund_requested"
    REFUND_PROCESSED = "refund_processed"


class EmailTemplate(enum.StrEnum):
    """Transactional email templates rendered by the email sender."""

    OFFER_RECEIVED = "offer_received"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    COUNTER_OFFER = "counter_offer"
    OFFER_EXPIRED = "offer_expired"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    ESCROW_RELEASED = "escrow_released"
