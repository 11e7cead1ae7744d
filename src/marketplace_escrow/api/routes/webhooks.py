"""Payment processor webhook route.

The body is verified against the Stripe-Signature header before anything is
parsed. Event ids already handled (tracked in Redis) are acknowledged without
re-processing; settlement itself is idempotent, so a Redis outage only costs
a redundant read.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request

from marketplace_escrow.api.deps import get_payment_gateway, get_processor_event_handler
from marketplace_escrow.domain.gateway_protocol import PaymentGateway  # noqa: TC001
from marketplace_escrow.infrastructure.redis_client import (
    is_event_processed,
    mark_event_processed,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.payments import WebhookResponse
from marketplace_escrow.services.processor_events import ProcessorEventHandler  # noqa: TC001

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


@router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    handler: ProcessorEventHandler = Depends(get_processor_event_handler),
) -> WebhookResponse:
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)

    if await is_event_processed(event.id):
        logger.info("webhook.duplicate", event_id=event.id, event_type=event.type)
        return WebhookResponse(outcome="duplicate")

    outcome = await handler.handle(event)
    await mark_event_processed(event.id)
    return WebhookResponse(outcome=outcome)
