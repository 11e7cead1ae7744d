"""Database infrastructure — engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    Base,
    ConnectedAccount,
    Listing,
    Notification,
    Offer,
    OfferEvent,
    PaymentIntentRecord,
    Transaction,
    TransactionEvent,
)
from marketplace_escrow.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    ListingRepository,
    NotificationRepository,
    OfferEventRepository,
    OfferRepository,
    PaymentIntentRepository,
    TransactionEventRepository,
    TransactionRepository,
)

__all__ = [
    "Base",
    "ConnectedAccount",
    "Listing",
    "Notification",
    "Offer",
    "OfferEvent",
    "PaymentIntentRecord",
    "Transaction",
    "TransactionEvent",
    "ConnectedAccountRepository",
    "ListingRepository",
    "NotificationRepository",
    "OfferEventRepository",
    "OfferRepository",
    "PaymentIntentRepository",
    "TransactionEventRepository",
    "TransactionRepository",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
