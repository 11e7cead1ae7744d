"""In-memory payment gateway for local runs and tests.

Used when no Stripe key is configured. Generates fake processor ids and
keeps intents, accounts, transfers and refunds in dictionaries. Tests drive it
directly: mark an intent succeeded, enable a seller's account, or replay
duplicate webhook events.
"""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING

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

SIMULATED_SIGNATURE = "simulated"


class SimulatedPaymentGateway:
    """PaymentGateway that never leaves the process."""

    def __init__(self, auto_enable_accounts: bool = True) -> None:
        self._auto_enable_accounts = auto_enable_accounts
        self.intents: dict[str, dict] = {}
        self.accounts: dict[str, AccountStatus] = {}
        self.transfers: dict[str, dict] = {}
        self.refunds: dict[str, dict] = {}
        self.calls: list[str] = []

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def set_intent_status(self, payment_intent_id: str, status: str) -> None:
        self.intents[payment_intent_id]["status"] = status

    def register_intent(self, metadata: IntentMetadata, status: str = "succeeded") -> None:
        """Seed an intent as if it had been created elsewhere."""
        self.intents[metadata.payment_intent_id] = {
            "metadata": metadata.to_processor_metadata(),
            "status": status,
        }

    def set_account(self, status: AccountStatus) -> None:
        self.accounts[status.account_id] = status

    # ------------------------------------------------------------------
    # PaymentGateway
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
        self.calls.append("create_intent")
        payment_intent_id = f"pi_sim_{uuid.uuid4().hex[:24]}"
        metadata = IntentMetadata(
            payment_intent_id=payment_intent_id,
            listing_id=listing_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=fee_split.gross,
            platform_fee=fee_split.platform_fee,
            seller_receives=fee_split.seller_receives,
            offer_id=offer_id,
            buyer_email=buyer_email,
        )
        self.register_intent(metadata, status="requires_payment_method")
        logger.info(
            "payment.intent_created",
            payment_intent_id=payment_intent_id,
            amount=fee_split.gross,
            simulated=True,
        )
        return CreatedIntent(
            payment_intent_id=payment_intent_id,
            client_secret=f"{payment_intent_id}_secret_{uuid.uuid4().hex[:12]}",
            status="requires_payment_method",
        )

    async def get_intent_metadata(self, payment_intent_id: str) -> IntentMetadata | None:
        self.calls.append("get_intent_metadata")
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            return None
        return IntentMetadata.from_processor_metadata(payment_intent_id, intent["metadata"])

    async def get_intent_status(self, payment_intent_id: str) -> str:
        self.calls.append("get_intent_status")
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            raise PaymentGatewayError(f"Unknown payment intent {payment_intent_id}")
        return intent["status"]

    def construct_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        if signature != SIMULATED_SIGNATURE:
            raise WebhookSignatureError()
        try:
            event = json.loads(payload)
            return ProcessorEvent(id=event["id"], type=event["type"], data=event.get("data", {}))
        except (ValueError, KeyError, TypeError) as exc:
            raise WebhookSignatureError("Invalid webhook payload") from exc

    async def create_account(self, email: str | None = None) -> AccountStatus:
        self.calls.append("create_account")
        enabled = self._auto_enable_accounts
        status = AccountStatus(
            account_id=f"acct_sim_{uuid.uuid4().hex[:16]}",
            charges_enabled=enabled,
            payouts_enabled=enabled,
            details_submitted=enabled,
        )
        self.accounts[status.account_id] = status
        logger.info("payment.account_created", account_id=status.account_id, simulated=True)
        return status

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        self.calls.append("retrieve_account")
        status = self.accounts.get(account_id)
        if status is None:
            raise PaymentGatewayError(f"Unknown account {account_id}")
        return status

    async def create_transfer(
        self,
        amount: int,
        destination_account_id: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        self.calls.append("create_transfer")
        # Same key, same transfer: mirrors processor-side idempotency keys
        existing = self.transfers.get(idempotency_key)
        if existing is not None:
            return existing["id"]
        transfer_id = f"tr_sim_{uuid.uuid4().hex[:24]}"
        self.transfers[idempotency_key] = {
            "id": transfer_id,
            "amount": amount,
            "destination": destination_account_id,
            "metadata": metadata or {},
        }
        logger.info(
            "payment.transfer_simulated",
            transfer_id=transfer_id,
            amount=amount,
            destination=destination_account_id,
        )
        return transfer_id

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: int | None,
        idempotency_key: str,
        reason: str = "requested_by_customer",
        metadata: dict[str, str] | None = None,
    ) -> str:
        self.calls.append("create_refund")
        existing = self.refunds.get(idempotency_key)
        if existing is not None:
            return existing["id"]
        if payment_intent_id not in self.intents:
            raise PaymentGatewayError(f"Unknown payment intent {payment_intent_id}")
        if amount is None:
            metadata_map = self.intents[payment_intent_id]["metadata"]
            amount = int(metadata_map["final_price_cents"]) - self.refunded_total(payment_intent_id)
        refund_id = f"re_sim_{uuid.uuid4().hex[:24]}"
        self.refunds[idempotency_key] = {
            "id": refund_id,
            "payment_intent_id": payment_intent_id,
            "amount": amount,
            "reason": reason,
            "metadata": metadata or {},
        }
        logger.info(
            "payment.refund_simulated",
            refund_id=refund_id,
            payment_intent_id=payment_intent_id,
            amount=amount,
            reason=reason,
        )
        return refund_id

    def refunded_total(self, payment_intent_id: str) -> int:
        return sum(
            r["amount"] for r in self.refunds.values() if r["payment_intent_id"] == payment_intent_id
        )
