"""Stripe implementation of the PaymentGateway protocol.

Funds are charged to the platform account (no transfer_data on the intent)
and moved to the seller's connected account later, by an explicit transfer
at escrow release. The fee split is written into the intent metadata so the
settlement path can rebuild it even if the local intent record is missing.

The stripe SDK is synchronous; calls run in a worker thread so they do not
block the event loop.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import stripe
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_escrow.domain.exceptions import PaymentGatewayError, WebhookSignatureError
from marketplace_escrow.domain.gateway_protocol import (
    AccountStatus,
    CreatedIntent,
    IntentMetadata,
    ProcessorEvent,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from marketplace_escrow.domain.money import FeeSplit

logger = get_logger(__name__)

# Network-level failures are safe to retry: every mutating call below either
# carries an idempotency key or is a plain read.
_transient = retry(
    retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


def _account_status(account) -> AccountStatus:  # noqa: ANN001
    return AccountStatus(
        account_id=account["id"],
        charges_enabled=bool(account.get("charges_enabled")),
        payouts_enabled=bool(account.get("payouts_enabled")),
        details_submitted=bool(account.get("details_submitted")),
    )


class StripePaymentGateway:
    """PaymentGateway backed by the Stripe API."""

    def __init__(self, secret_key: str, webhook_secret: str, currency: str = "usd") -> None:
        self._api_key = secret_key
        self._webhook_secret = webhook_secret
        self._currency = currency

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        fee_split: FeeSplit,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        offer_id: str | None = None,
        buyer_email: str | None = None,
    ) -> CreatedIntent:
        metadata = IntentMetadata(
            payment_intent_id="",
            listing_id=listing_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=fee_split.gross,
            platform_fee=fee_split.platform_fee,
            seller_receives=fee_split.seller_receives,
            offer_id=offer_id,
            buyer_email=buyer_email,
        ).to_processor_metadata()

        params: dict = {
            "amount": fee_split.gross,
            "currency": self._currency,
            "metadata": metadata,
            "description": f"Purchase of listing {listing_id} (escrow)",
        }
        if buyer_email:
            params["receipt_email"] = buyer_email

        intent = await self._call("create_intent", stripe.PaymentIntent.create, **params)
        logger.info(
            "stripe.intent_created",
            payment_intent_id=intent["id"],
            amount=fee_split.gross,
            listing_id=listing_id,
        )
        return CreatedIntent(
            payment_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            status=intent["status"],
        )

    async def get_intent_metadata(self, payment_intent_id: str) -> IntentMetadata | None:
        intent = await self._retrieve_intent(payment_intent_id)
        if intent is None:
            return None
        return IntentMetadata.from_processor_metadata(
            payment_intent_id, dict(intent.get("metadata") or {})
        )

    async def get_intent_status(self, payment_intent_id: str) -> str:
        intent = await self._retrieve_intent(payment_intent_id)
        if intent is None:
            raise PaymentGatewayError(f"Unknown payment intent {payment_intent_id}")
        return str(intent["status"])

    async def _retrieve_intent(self, payment_intent_id: str):  # noqa: ANN202
        try:
            return await self._call(
                "retrieve_intent", stripe.PaymentIntent.retrieve, payment_intent_id
            )
        except PaymentGatewayError as exc:
            if isinstance(exc.__cause__, stripe.InvalidRequestError):
                return None
            raise

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        """Verify the Stripe-Signature header and parse the event."""
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe.webhook_signature_invalid", error=str(exc))
            raise WebhookSignatureError() from exc
        except ValueError as exc:
            logger.warning("stripe.webhook_payload_invalid", error=str(exc))
            raise WebhookSignatureError("Invalid webhook payload") from exc
        # signature already verified over the raw body
        body = json.loads(payload)
        return ProcessorEvent(id=event["id"], type=event["type"], data=body.get("data") or {})

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def create_account(self, email: str | None = None) -> AccountStatus:
        params: dict = {
            "type": "express",
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
        }
        if email:
            params["email"] = email
        account = await self._call("create_account", stripe.Account.create, **params)
        logger.info("stripe.account_created", account_id=account["id"])
        return _account_status(account)

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        account = await self._call("retrieve_account", stripe.Account.retrieve, account_id)
        return _account_status(account)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def create_transfer(
        self,
        amount: int,
        destination_account_id: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        transfer = await self._call(
            "create_transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=self._currency,
            destination=destination_account_id,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "stripe.transfer_created",
            transfer_id=transfer["id"],
            amount=amount,
            destination=destination_account_id,
        )
        return str(transfer["id"])

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: int | None,
        idempotency_key: str,
        reason: str = "requested_by_customer",
        metadata: dict[str, str] | None = None,
    ) -> str:
        params: dict = {
            "payment_intent": payment_intent_id,
            "reason": reason,
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        }
        if amount is not None:
            params["amount"] = amount
        refund = await self._call("create_refund", stripe.Refund.create, **params)
        logger.info(
            "stripe.refund_created",
            refund_id=refund["id"],
            payment_intent_id=payment_intent_id,
            amount=refund.get("amount"),
            reason=reason,
        )
        return str(refund["id"])

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @_transient
    async def _call_with_retry(self, fn, *args, **kwargs):  # noqa: ANN001, ANN002, ANN003, ANN202
        return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)

    async def _call(self, operation: str, fn, *args, **kwargs):  # noqa: ANN001, ANN002, ANN003, ANN202
        try:
            return await self._call_with_retry(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error(
                "stripe.call_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentGatewayError(f"Stripe {operation} failed: {exc}") from exc
