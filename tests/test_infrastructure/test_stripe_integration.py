"""Integration tests for the Stripe gateway against the REAL Stripe test mode.

Requires STRIPE_SECRET_KEY (an sk_test_ key) in the environment.

Run with:
    uv run pytest tests/test_infrastructure/test_stripe_integration.py -v -s

These are marked with @pytest.mark.integration so they can be skipped
in CI with: pytest -m "not integration"
"""

from __future__ import annotations

import os
import uuid

import pytest

from marketplace_escrow.domain.money import compute_fee_split
from marketplace_escrow.infrastructure.payments.stripe_gateway import StripePaymentGateway

pytestmark = pytest.mark.integration

STRIPE_KEY = os.environ.get("STRIPE_SECRET_KEY", "")


@pytest.mark.skipif(not STRIPE_KEY.startswith("sk_test_"), reason="STRIPE_SECRET_KEY not set")
class TestStripeIntegration:
    @pytest.mark.asyncio
    async def test_intent_metadata_round_trips(self) -> None:
        gateway = StripePaymentGateway(secret_key=STRIPE_KEY, webhook_secret="")
        listing_id = str(uuid.uuid4())

        created = await gateway.create_intent(
            fee_split=compute_fee_split(5000, 5),
            buyer_id="integration-buyer",
            seller_id="integration-seller",
            listing_id=listing_id,
        )
        metadata = await gateway.get_intent_metadata(created.payment_intent_id)

        assert created.client_secret
        assert metadata is not None
        assert metadata.listing_id == listing_id
        assert metadata.platform_fee == 250
        assert metadata.seller_receives == 4750
        assert await gateway.get_intent_status(created.payment_intent_id) == created.status

    @pytest.mark.asyncio
    async def test_new_account_is_not_ready(self) -> None:
        gateway = StripePaymentGateway(secret_key=STRIPE_KEY, webhook_secret="")

        status = await gateway.create_account(email="integration-seller@example.com")
        fetched = await gateway.retrieve_account(status.account_id)

        assert fetched.account_id == status.account_id
        assert fetched.payouts_enabled is False
