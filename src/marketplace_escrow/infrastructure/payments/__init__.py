"""Payment processor adapters."""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.infrastructure.payments.simulated import SimulatedPaymentGateway
from marketplace_escrow.infrastructure.payments.stripe_gateway import StripePaymentGateway

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.gateway_protocol import PaymentGateway


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    """Stripe when a secret key is configured, the in-memory gateway otherwise."""
    if settings.payments_simulated:
        return SimulatedPaymentGateway()
    return StripePaymentGateway(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.currency,
    )


__all__ = ["SimulatedPaymentGateway", "StripePaymentGateway", "build_payment_gateway"]
