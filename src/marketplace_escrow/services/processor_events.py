"""Routes verified payment-processor webhook events to the services.

The webhook route verifies the signature (gateway.construct_event) and
skips event ids it has already handled; this handler only dispatches on
the event type. Unknown event types are logged and acknowledged.

Handled types: payment_intent.succeeded, payment_intent.processing,
payment_intent.payment_failed, account.updated, charge.refunded and
charge.dispute.created.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import SettlementTrigger, TransactionStatus
from marketplace_escrow.domain.gateway_protocol import AccountStatus
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.account_service import ConnectedAccountService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.domain.gateway_protocol import PaymentGateway, ProcessorEvent
    from marketplace_escrow.services.release_service import ReleaseService
    from marketplace_escrow.services.settlement_service import SettlementMaterializer

logger = get_logger(__name__)


class ProcessorEventHandler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        materializer: SettlementMaterializer,
        release_service: ReleaseService,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._materializer = materializer
        self._release_service = release_service

    async def handle(self, event: ProcessorEvent) -> str:
        """Dispatch one event. Returns a short outcome label for the response/logs."""
        obj = event.data.get("object") or {}
        log = logger.bind(event_id=event.id, event_type=event.type)

        match event.type:
            case "payment_intent.succeeded":
                metadata = obj.get("metadata") or {}
                result = await self._materializer.settle(
                    obj["id"],
                    listing_id=metadata.get("listing_id") or None,
                    offer_id=metadata.get("offer_id") or None,
                    trigger=SettlementTrigger.WEBHOOK,
                )
                if result.duplicate_refunded:
                    outcome = "duplicate_refunded"
                else:
                    outcome = "settled" if result.created else "already_settled"

            case "payment_intent.processing":
                metadata = obj.get("metadata") or {}
                txn = await self._materializer.begin_processing(
                    obj["id"],
                    listing_id=metadata.get("listing_id") or None,
                    offer_id=metadata.get("offer_id") or None,
                )
                outcome = "processing" if txn is not None else "processing_blocked"

            case "payment_intent.payment_failed":
                error = (obj.get("last_payment_error") or {}).get("message")
                await self._materializer.cancel_processing(obj["id"], error=error)
                log.warning("webhook.payment_failed", payment_intent_id=obj["id"], error=error)
                outcome = "payment_failed"

            case "account.updated":
                status = AccountStatus(
                    account_id=obj["id"],
                    charges_enabled=bool(obj.get("charges_enabled")),
                    payouts_enabled=bool(obj.get("payouts_enabled")),
                    details_submitted=bool(obj.get("details_submitted")),
                )
                async with self._session_factory() as session:
                    account = await ConnectedAccountService(
                        session, self._gateway
                    ).apply_processor_update(status)
                    await session.commit()
                outcome = "account_updated" if account is not None else "account_unknown"

            case "charge.refunded":
                txn = await self._release_service.apply_refund(
                    obj["payment_intent"],
                    amount_refunded=int(obj.get("amount_refunded", 0)),
                    amount=int(obj["amount"]) if obj.get("amount") is not None else None,
                )
                outcome = "refund_applied" if txn is not None else "refund_unknown"

            case "charge.dispute.created":
                txn = await self._release_service.open_dispute(
                    obj["payment_intent"],
                    reason=obj.get("reason"),
                    dispute_id=obj.get("id"),
                )
                if txn is None:
                    outcome = "dispute_unknown"
                elif txn.status == TransactionStatus.DISPUTED:
                    outcome = "dispute_opened"
                else:
                    outcome = "dispute_ignored"

            case _:
                outcome = "ignored"

        log.info("webhook.handled", outcome=outcome)
        return outcome
