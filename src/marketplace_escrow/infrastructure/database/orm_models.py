"""SQLAlchemy 2.0 ORM models for the marketplace escrow engine.

Tables:
    1. listings            — Minimal listing row this core mutates (status, sold price/date).
    2. offers              — Price offers and counter offers on a listing.
    3. offer_events        — Append-only log of every offer transition.
    4. payment_intents     — Local reference to each processor charge intent.
    5. transactions        — Settled sales; one per payment intent.
    6. transaction_events  — Append-only log of transaction lifecycle changes.
    7. connected_accounts  — Mirror of each seller's processor payout account.
    8. notifications       — In-app notifications written by the dispatcher.

Design decisions:
    - UUIDs as primary keys; user ids are opaque strings owned by the auth system.
    - Integer minor units (cents) for every money column. No floats, no Numeric.
    - transactions.payment_intent_id is UNIQUE: the idempotency anchor for settlement.
    - A partial unique index allows at most one open transaction per listing.
    - CHECK constraints on status values, positive amounts and the fee split.
    - *_events tables are append-only: no UPDATE or DELETE at the application level.
    - Event logs are read through their repositories, never as ORM collections.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

_OPEN_TRANSACTION_FILTER = (
    "status IN ('pending', 'payment_processing', 'payment_held', 'disputed')"
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TZDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite has no timezone storage, so values are normalized to UTC on the
    way in and tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime is not allowed: {value!r}")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. listings
# ---------------------------------------------------------------------------
class Listing(Base):
    """A physical good for sale. Only the fields this core mutates live here."""

    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    price: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Asking price in minor units",
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    sold_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    sold_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT', 'ACTIVE', 'PENDING', 'SOLD', 'REMOVED')",
            name="ck_listing_valid_status",
        ),
        CheckConstraint("price > 0", name="ck_listing_positive_price"),
        Index("idx_listing_seller", "seller_id"),
        Index("idx_listing_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Listing id={self.id} status={self.status} price={self.price}>"


# ---------------------------------------------------------------------------
# 2. offers
# ---------------------------------------------------------------------------
class Offer(Base):
    """A buyer's offer on a listing, or a seller's counter offer."""

    __tablename__ = "offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id"), nullable=False
    )
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_email: Mapped[str | None] = mapped_column(
        String(320),
        nullable=True,
        default=None,
        comment="Where offer updates are emailed, if the buyer gave an address",
    )

    # --- Terms ---
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Offered price in minor units",
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    contingencies: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=None)
    includes_transport: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    includes_inspection: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Negotiation ---
    offer_type: Mapped[str] = mapped_column(String(10), nullable=False, default="initial")
    parent_offer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("offers.id"),
        nullable=True,
        default=None,
        comment="The offer this counter offer responds to",
    )

    # --- Status (CAS-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Current lifecycle state (guarded by OfferStateMachine)",
    )
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    responded_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'countered', 'accepted', 'rejected', "
            "'expired', 'cancelled')",
            name="ck_offer_valid_status",
        ),
        CheckConstraint("offer_type IN ('initial', 'counter')", name="ck_offer_valid_type"),
        CheckConstraint("amount > 0", name="ck_offer_positive_amount"),
        CheckConstraint("expires_at > created_at", name="ck_offer_expiry_after_creation"),
        Index("idx_offer_listing_status", "listing_id", "status"),
        Index("idx_offer_status_expires", "status", "expires_at"),
        Index("idx_offer_buyer", "buyer_id"),
        Index("idx_offer_seller", "seller_id"),
    )

    @property
    def maker_id(self) -> str:
        """The party who made this offer; the other party responds."""
        return self.seller_id if self.offer_type == "counter" else self.buyer_id

    @property
    def responder_id(self) -> str:
        return self.buyer_id if self.offer_type == "counter" else self.seller_id

    def __repr__(self) -> str:
        return f"<Offer id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 3. offer_events (Append-Only)
# ---------------------------------------------------------------------------
class OfferEvent(Base):
    """Immutable record of one offer transition."""

    __tablename__ = "offer_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    offer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offers.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="User who triggered the event, or SYSTEM for the sweep",
    )
    payload: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="Snapshot of the terms at the time of the event",
    )
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_offer_event_offer", "offer_id"),
        Index("idx_offer_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<OfferEvent id={self.id} offer={self.offer_id} type={self.event_type}>"


# ---------------------------------------------------------------------------
# 4. payment_intents
# ---------------------------------------------------------------------------
class PaymentIntentRecord(Base):
    """Local copy of the metadata a payment intent was created with."""

    __tablename__ = "payment_intents"

    id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Processor intent id (pi_...)",
    )
    listing_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    offer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, default=None)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_email: Mapped[str | None] = mapped_column(String(320), nullable=True, default=None)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    seller_receives: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    status: Mapped[str] = mapped_column(String(40), nullable=False, default="created")
    client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_payment_intent_listing", "listing_id"),)

    def __repr__(self) -> str:
        return f"<PaymentIntentRecord id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 5. transactions
# ---------------------------------------------------------------------------
class Transaction(Base):
    """A settled sale: funds captured and held until release."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_intent_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Idempotency anchor: one transaction per processor intent",
    )
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id"), nullable=False
    )
    offer_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, default=None)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Financials (minor units) ---
    final_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    seller_receives: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="payment_held",
        comment="Current lifecycle state (guarded by TransactionStateMachine)",
    )

    # --- Escrow ---
    escrow_release_date: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    escrow_released_at: Mapped[datetime | None] = mapped_column(
        TZDateTime, nullable=True, default=None
    )
    transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'payment_processing', 'payment_held', 'completed', "
            "'refunded', 'partially_refunded', 'disputed', 'cancelled')",
            name="ck_transaction_valid_status",
        ),
        CheckConstraint("final_price > 0", name="ck_transaction_positive_price"),
        CheckConstraint(
            "platform_fee + seller_receives = final_price",
            name="ck_transaction_fee_split",
        ),
        Index(
            "uq_transaction_open_listing",
            "listing_id",
            unique=True,
            postgresql_where=text(_OPEN_TRANSACTION_FILTER),
            sqlite_where=text(_OPEN_TRANSACTION_FILTER),
        ),
        Index("idx_transaction_status_release", "status", "escrow_release_date"),
        Index("idx_transaction_buyer", "buyer_id"),
        Index("idx_transaction_seller", "seller_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction id={self.id} intent={self.payment_intent_id} "
            f"status={self.status} price={self.final_price}>"
        )


# ---------------------------------------------------------------------------
# 6. transaction_events (Append-Only)
# ---------------------------------------------------------------------------
class TransactionEvent(Base):
    """Immutable record of one transaction lifecycle change."""

    __tablename__ = "transaction_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_transaction_event_transaction", "transaction_id"),)

    def __repr__(self) -> str:
        return (
            f"<TransactionEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 7. connected_accounts
# ---------------------------------------------------------------------------
class ConnectedAccount(Base):
    """Cached payout-account flags. The processor stays authoritative."""

    __tablename__ = "connected_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    processor_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, default=None)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)

    @property
    def fully_set_up(self) -> bool:
        return self.charges_enabled and self.payouts_enabled and self.details_submitted

    def __repr__(self) -> str:
        return (
            f"<ConnectedAccount user={self.user_id} account={self.processor_account_id} "
            f"ready={self.fully_set_up}>"
        )


# ---------------------------------------------------------------------------
# 8. notifications
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(512), nullable=True, default=None)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_notification_user", "user_id", "is_read"),)


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (Listing, Offer, PaymentIntentRecord, Transaction):
    event.listen(_model, "before_update", _set_updated_at)
