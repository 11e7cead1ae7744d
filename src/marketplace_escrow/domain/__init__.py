"""Domain layer — pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.enums import (
    ListingStatus,
    OfferEventType,
    OfferStatus,
    OfferType,
    TransactionEventType,
    TransactionStatus,
)
from marketplace_escrow.domain.exceptions import (
    FeeMismatchError,
    InvalidStateTransitionError,
    MarketplaceError,
    PaymentMetadataMissingError,
    UniqueConflictError,
)
from marketplace_escrow.domain.gateway_protocol import (
    EmailSender,
    IntentMetadata,
    NotificationDispatcher,
    PaymentGateway,
)
from marketplace_escrow.domain.money import FeeSplit, compute_fee_split
from marketplace_escrow.domain.state_machine import (
    OfferStateMachine,
    TransactionStateMachine,
    validate_offer_transition,
    validate_transaction_transition,
)

__all__ = [
    "ListingStatus",
    "OfferEventType",
    "OfferStatus",
    "OfferType",
    "TransactionEventType",
    "TransactionStatus",
    "FeeMismatchError",
    "InvalidStateTransitionError",
    "MarketplaceError",
    "PaymentMetadataMissingError",
    "UniqueConflictError",
    "EmailSender",
    "IntentMetadata",
    "NotificationDispatcher",
    "PaymentGateway",
    "FeeSplit",
    "compute_fee_split",
    "OfferStateMachine",
    "TransactionStateMachine",
    "validate_offer_transition",
    "validate_transaction_transition",
]
