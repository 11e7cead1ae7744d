"""Domain exceptions for the marketplace escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.

Propagation policy:
    - Anything affecting money correctness (settlement preconditions) is
      raised loudly and aborts the operation.
    - UniqueConflictError is expected and handled inside the settlement path.
    - NotificationDispatchError / EmailSendError are always logged and
      swallowed at the side-effect boundary.
"""


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidStateTransitionError(MarketplaceError):
    """Raised when an attempted transition is not allowed from the current state.

    Also raised when a compare-and-swap update affects zero rows because a
    concurrent writer (e.g. the expiration sweep) changed the status first.
    The caller must re-fetch and re-render; it must not retry blindly.
    """

    def __init__(self, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state


# --- Lookup Errors ---


class OfferNotFoundError(MarketplaceError):
    def __init__(self, offer_id: str) -> None:
        super().__init__(message=f"Offer not found: {offer_id}", code="OFFER_NOT_FOUND")
        self.offer_id = offer_id


class ListingNotFoundError(MarketplaceError):
    def __init__(self, listing_id: str) -> None:
        super().__init__(message=f"Listing not found: {listing_id}", code="LISTING_NOT_FOUND")
        self.listing_id = listing_id


class TransactionNotFoundError(MarketplaceError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            message=f"Transaction not found: {transaction_id}",
            code="TRANSACTION_NOT_FOUND",
        )
        self.transaction_id = transaction_id


class ConnectedAccountNotFoundError(MarketplaceError):
    def __init__(self, user_id: str) -> None:
        super().__init__(
            message=f"No payout account for user: {user_id}",
            code="CONNECTED_ACCOUNT_NOT_FOUND",
        )
        self.user_id = user_id


# --- Offer Errors ---


class NotOfferParticipantError(MarketplaceError):
    """Raised when an actor tries an offer action reserved for another party."""

    def __init__(self, offer_id: str, actor_id: str, action: str) -> None:
        super().__init__(
            message=f"Actor {actor_id} may not {action} offer {offer_id}",
            code="NOT_OFFER_PARTICIPANT",
        )
        self.offer_id = offer_id
        self.actor_id = actor_id


class OfferValidationError(MarketplaceError):
    """Raised when offer terms are malformed (amount, expiry window, self-offer)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="OFFER_VALIDATION_ERROR")


class OfferExtensionOutOfRangeError(MarketplaceError):
    def __init__(self, additional_days: int, min_days: int, max_days: int) -> None:
        super().__init__(
            message=(
                f"Extension of {additional_days} days is outside the allowed "
                f"window of {min_days}-{max_days} days"
            ),
            code="OFFER_EXTENSION_OUT_OF_RANGE",
        )
        self.additional_days = additional_days


# --- Listing Errors ---


class ListingUnavailableError(MarketplaceError):
    """Raised when a listing cannot take offers or payments in its current status."""

    def __init__(self, listing_id: str, status: str) -> None:
        super().__init__(
            message=f"Listing {listing_id} is not available (status {status})",
            code="LISTING_UNAVAILABLE",
        )
        self.listing_id = listing_id
        self.status = status


# --- Payment & Settlement Errors ---


class SettlementError(MarketplaceError):
    """Base for settlement precondition failures. Fatal, never materializes."""


class PaymentMetadataMissingError(SettlementError):
    """The payment intent was never properly created; amounts are not guessed."""

    def __init__(self, payment_intent_id: str) -> None:
        super().__init__(
            message=f"No captured metadata for payment intent {payment_intent_id}",
            code="PAYMENT_METADATA_MISSING",
        )
        self.payment_intent_id = payment_intent_id


class PaymentMetadataMismatchError(SettlementError):
    def __init__(self, payment_intent_id: str, expected_listing: str, actual_listing: str) -> None:
        super().__init__(
            message=(
                f"Payment intent {payment_intent_id} belongs to listing "
                f"{actual_listing}, not {expected_listing}"
            ),
            code="PAYMENT_METADATA_MISMATCH",
        )
        self.payment_intent_id = payment_intent_id


class FeeMismatchError(SettlementError):
    """platform_fee + seller_receives does not reconcile with the gross amount."""

    def __init__(self, gross: int, platform_fee: int, seller_receives: int) -> None:
        super().__init__(
            message=(
                f"Fee split does not reconcile: {platform_fee} + {seller_receives} "
                f"!= {gross}"
            ),
            code="FEE_MISMATCH",
        )
        self.gross = gross
        self.platform_fee = platform_fee
        self.seller_receives = seller_receives


class UniqueConflictError(MarketplaceError):
    """A concurrent writer already inserted a row with the same unique key.

    Handled internally by the settlement materializer (re-read); never surfaced.
    """

    def __init__(self, constraint: str, detail: str = "") -> None:
        super().__init__(
            message=f"Unique constraint conflict on {constraint}: {detail}",
            code="UNIQUE_CONFLICT",
        )
        self.constraint = constraint


class CheckoutError(MarketplaceError):
    """Raised when a payment cannot be started for this buyer, listing and offer."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CHECKOUT_INVALID")


class SellerPayoutNotReadyError(MarketplaceError):
    """The seller's payout account cannot receive funds yet."""

    def __init__(self, seller_id: str) -> None:
        super().__init__(
            message=f"Seller {seller_id} has not completed payment setup",
            code="SELLER_PAYOUT_NOT_READY",
        )
        self.seller_id = seller_id


class PaymentGatewayError(MarketplaceError):
    """Raised when a payment processor call fails or returns something unusable."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="PAYMENT_GATEWAY_ERROR")


class WebhookSignatureError(MarketplaceError):
    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message=message, code="INVALID_WEBHOOK_SIGNATURE")


class NotTransactionParticipantError(MarketplaceError):
    def __init__(self, transaction_id: str, actor_id: str, action: str = "release") -> None:
        super().__init__(
            message=f"Actor {actor_id} may not {action} transaction {transaction_id}",
            code="NOT_TRANSACTION_PARTICIPANT",
        )
        self.transaction_id = transaction_id
        self.actor_id = actor_id


class RefundValidationError(MarketplaceError):
    """Raised when a refund amount is not positive or exceeds what is left to refund."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="REFUND_INVALID")


# --- Side-effect Errors (always swallowed after logging) ---


class NotificationDispatchError(MarketplaceError):
    def __init__(self, user_id: str, notification_type: str, reason: str) -> None:
        super().__init__(
            message=f"Could not notify {user_id} ({notification_type}): {reason}",
            code="NOTIFICATION_DISPATCH_FAILED",
        )


class EmailSendError(MarketplaceError):
    def __init__(self, recipient: str, reason: str) -> None:
        super().__init__(
            message=f"Could not email {recipient}: {reason}",
            code="EMAIL_SEND_FAILED",
        )
