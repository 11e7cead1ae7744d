#!/usr/bin/env python3
"""Marketplace Escrow — End-to-End Simulation.

Runs three scenarios between a SellerBot and two BuyerBots against a local
SQLite database and the in-memory payment gateway:

    Scenario 1: Negotiation
        - Buyer A offers below asking, seller counters, buyer A accepts
        - Buyer B's competing offer is rejected automatically

    Scenario 2: Settlement Race
        - Buyer pays; the webhook and the browser redirect arrive together
        - Exactly one Transaction is created, side effects fire once

    Scenario 3: Expiry and Escrow Release
        - An ignored offer expires in the sweep, then is extended
        - A held payment is released to the seller after the hold period

    Scenario 4: Duplicate Payment and Refund
        - Two buyers pay for the same listing; the second payment is refunded
        - The seller refunds part of the winning payment

Usage:
    uv run python simulation.py
    uv run python simulation.py --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from marketplace_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from marketplace_escrow.config import Settings  # noqa: E402
from marketplace_escrow.domain.enums import ListingStatus, SettlementTrigger  # noqa: E402
from marketplace_escrow.infrastructure.database.engine import (  # noqa: E402
    build_engine,
    build_session_factory,
)
from marketplace_escrow.infrastructure.database.orm_models import Base, Listing  # noqa: E402
from marketplace_escrow.infrastructure.database.repositories import ListingRepository  # noqa: E402
from marketplace_escrow.infrastructure.email_sender import HttpEmailSender  # noqa: E402
from marketplace_escrow.infrastructure.notifications import (  # noqa: E402
    DatabaseNotificationDispatcher,
)
from marketplace_escrow.infrastructure.payments.simulated import (  # noqa: E402
    SimulatedPaymentGateway,
)
from marketplace_escrow.services.account_service import ConnectedAccountService  # noqa: E402
from marketplace_escrow.services.checkout_service import CheckoutService  # noqa: E402
from marketplace_escrow.services.expiration_sweeper import ExpirationSweeper  # noqa: E402
from marketplace_escrow.services.offer_service import OfferService  # noqa: E402
from marketplace_escrow.services.release_service import ReleaseService  # noqa: E402
from marketplace_escrow.services.settlement_service import SettlementMaterializer  # noqa: E402


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
@dataclass
class Marketplace:
    """Everything a scenario needs, bound to one throwaway database."""

    settings: Settings
    engine: Any
    session_factory: Any
    gateway: SimulatedPaymentGateway

    @property
    def notifier(self) -> DatabaseNotificationDispatcher:
        return DatabaseNotificationDispatcher(self.session_factory)

    @property
    def email_sender(self) -> HttpEmailSender:
        return HttpEmailSender.from_settings(self.settings)

    def offers(self, session: Any) -> OfferService:
        return OfferService(session, self.settings, self.notifier, self.email_sender)

    def materializer(self) -> SettlementMaterializer:
        return SettlementMaterializer(
            self.session_factory,
            self.gateway,
            notifier=self.notifier,
            email_sender=self.email_sender,
            settings=self.settings,
        )

    def release_service(self) -> ReleaseService:
        return ReleaseService(
            self.session_factory,
            self.gateway,
            notifier=self.notifier,
            settings=self.settings,
            email_sender=self.email_sender,
        )


async def open_marketplace(workdir: Path) -> Marketplace:
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{workdir / 'simulation.db'}",
        stripe_secret_key="",
        email_api_key="",
    )
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.sqlite_initialized", url=settings.database_url)
    return Marketplace(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        gateway=SimulatedPaymentGateway(),
    )


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------
@dataclass
class SellerBot:
    user_id: str = "seller-sim"

    async def onboard(self, market: Marketplace) -> None:
        async with market.session_factory() as session:
            account = await ConnectedAccountService(session, market.gateway).onboard_seller(
                self.user_id, email="seller@example.com"
            )
            await session.commit()
        logger.info("🟢 SELLER: Payout account ready", account=account.processor_account_id)

    async def list_item(self, market: Marketplace, title: str, price: int) -> Listing:
        async with market.session_factory() as session:
            listing = await ListingRepository(session).create(
                Listing(
                    seller_id=self.user_id,
                    title=title,
                    price=price,
                    status=ListingStatus.ACTIVE.value,
                )
            )
            await session.commit()
        logger.info("🟢 SELLER: Listed", listing_id=str(listing.id), title=title, price=price)
        return listing


@dataclass
class BuyerBot:
    user_id: str
    email: str | None = None

    async def offer(self, market: Marketplace, listing: Listing, amount: int, **kwargs: Any) -> Any:
        async with market.session_factory() as session:
            offers = market.offers(session)
            offer = await offers.create_offer(
                listing_id=listing.id,
                buyer_id=self.user_id,
                amount=amount,
                buyer_email=self.email,
                **kwargs,
            )
            await session.commit()
            await offers.dispatch_notifications()
        logger.info("🔵 BUYER: Offer made", buyer=self.user_id, amount=amount)
        return offer

    async def pay(self, market: Marketplace, listing: Listing, offer_id: Any = None) -> str:
        async with market.session_factory() as session:
            checkout = CheckoutService(session, market.gateway, market.settings)
            record = await checkout.create_payment_intent(
                listing_id=listing.id,
                buyer_id=self.user_id,
                offer_id=offer_id,
                buyer_email=self.email,
            )
            await session.commit()
        # the buyer completes the payment page
        market.gateway.set_intent_status(record.id, "succeeded")
        logger.info("🔵 BUYER: Paid", payment_intent_id=record.id, amount=record.amount)
        return record.id


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    print(f"\n{'=' * 70}\n  {text}\n{'=' * 70}")


def section(text: str) -> None:
    print(f"\n--- {text} ---")


async def print_offer_trail(market: Marketplace, offer_id: Any) -> None:
    async with market.session_factory() as session:
        events = await market.offers(session).get_events(offer_id)
    section("Offer Event Log")
    for event in events:
        print(f"  {event.created_at:%H:%M:%S}  {event.event_type:<10} by {event.actor_id}")


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
async def scenario_1_negotiation(market: Marketplace) -> None:
    banner("SCENARIO 1: Negotiation")
    seller = SellerBot()
    buyer_a = BuyerBot("buyer-a")
    buyer_b = BuyerBot("buyer-b")

    listing = await seller.list_item(market, "Warmblood mare, 9yo", price=1_500_000)
    first = await buyer_a.offer(market, listing, 1_200_000, includes_inspection=True)
    competing = await buyer_b.offer(market, listing, 1_250_000)

    async with market.session_factory() as session:
        offers = market.offers(session)
        _, counter = await offers.counter_offer(
            first.id, seller.user_id, amount=1_400_000, message="Meet me closer to asking"
        )
        await session.commit()
        await offers.dispatch_notifications()
    logger.info("🟢 SELLER: Countered", amount=counter.amount)

    async with market.session_factory() as session:
        offers = market.offers(session)
        accepted = await offers.accept_offer(counter.id, buyer_a.user_id)
        await session.commit()
        await offers.dispatch_notifications()
    logger.info("🔵 BUYER: Accepted counter", offer_id=str(accepted.id))

    async with market.session_factory() as session:
        competing = await market.offers(session).get_offer(competing.id)
    section("Result")
    print(f"  Accepted offer:  {accepted.amount} ({accepted.status})")
    print(f"  Competing offer: {competing.amount} ({competing.status})")
    await print_offer_trail(market, counter.id)


async def scenario_2_settlement_race(market: Marketplace) -> None:
    banner("SCENARIO 2: Settlement Race")
    seller = SellerBot()
    buyer = BuyerBot("buyer-c", email="buyer-c@example.com")
    await seller.onboard(market)

    listing = await seller.list_item(market, "Dressage saddle", price=250_000)
    payment_intent_id = await buyer.pay(market, listing)

    materializer = market.materializer()
    webhook, redirect = await asyncio.gather(
        materializer.settle(
            payment_intent_id, listing_id=listing.id, trigger=SettlementTrigger.WEBHOOK
        ),
        materializer.settle(payment_intent_id, trigger=SettlementTrigger.REDIRECT),
    )

    section("Result")
    print(f"  Webhook  -> transaction {webhook.transaction.id} created={webhook.created}")
    print(f"  Redirect -> transaction {redirect.transaction.id} created={redirect.created}")
    print(f"  Same transaction: {webhook.transaction.id == redirect.transaction.id}")
    txn = webhook.transaction
    print(f"  Price {txn.final_price}, fee {txn.platform_fee}, seller gets {txn.seller_receives}")


async def scenario_3_expiry_and_release(market: Marketplace) -> None:
    banner("SCENARIO 3: Expiry and Escrow Release")
    seller = SellerBot()
    buyer = BuyerBot("buyer-d")
    await seller.onboard(market)

    listing = await seller.list_item(market, "Horse trailer", price=800_000)
    offer = await buyer.offer(market, listing, 700_000, expires_in_days=1)

    later = datetime.now(UTC) + timedelta(days=2)
    sweeper = ExpirationSweeper(
        market.session_factory, market.notifier, market.settings, market.email_sender
    )
    result = await sweeper.sweep(now=later)
    logger.info("⏰ SWEEP: Offers expired", count=result.expired_count)

    async with market.session_factory() as session:
        offers = market.offers(session)
        offer = await offers.extend_offer(offer.id, buyer.user_id, 3, now=later)
        await session.commit()
        await offers.dispatch_notifications()
    logger.info("🔵 BUYER: Extended offer", expires_at=offer.expires_at.isoformat())

    async with market.session_factory() as session:
        offers = market.offers(session)
        offer = await offers.accept_offer(offer.id, seller.user_id, now=later)
        await session.commit()
        await offers.dispatch_notifications()

    payment_intent_id = await buyer.pay(market, listing, offer_id=offer.id)
    settled = await market.materializer().settle(payment_intent_id)

    release_at = settled.transaction.escrow_release_date + timedelta(minutes=1)
    released = await market.release_service().release_due(now=release_at)

    section("Result")
    print(f"  Offer status after extend + accept: {offer.status}")
    print(f"  Held until: {settled.transaction.escrow_release_date:%Y-%m-%d}")
    print(f"  Auto-released transactions: {[str(t) for t in released]}")
    print(f"  Transfers made: {len(market.gateway.transfers)}")


async def scenario_4_duplicate_payment_and_refund(market: Marketplace) -> None:
    banner("SCENARIO 4: Duplicate Payment and Refund")
    seller = SellerBot()
    first = BuyerBot("buyer-e", email="buyer-e@example.com")
    second = BuyerBot("buyer-f", email="buyer-f@example.com")
    await seller.onboard(market)

    listing = await seller.list_item(market, "Jumping saddle", price=180_000)
    # both buyers reach the payment page before either payment settles
    first_intent = await first.pay(market, listing)
    second_intent = await second.pay(market, listing)

    materializer = market.materializer()
    winner = await materializer.settle(first_intent)
    loser = await materializer.settle(second_intent)
    logger.info(
        "💸 SETTLEMENT: Second payment refunded",
        payment_intent_id=second_intent,
        status=loser.transaction.status,
    )

    refunded = await market.release_service().process_refund(
        winner.transaction.id, seller.user_id, amount=30_000
    )
    logger.info("🟢 SELLER: Partial refund", amount=30_000, status=refunded.status)

    section("Result")
    print(f"  Winner:  {winner.transaction.id} ({winner.transaction.status})")
    print(f"  Loser:   {loser.transaction.id} refunded={loser.duplicate_refunded}")
    print(f"  After partial refund: {refunded.status}, refunded {refunded.refunded_amount}")
    print(f"  Refunds issued: {len(market.gateway.refunds)}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
SCENARIOS = {
    1: scenario_1_negotiation,
    2: scenario_2_settlement_race,
    3: scenario_3_expiry_and_release,
    4: scenario_4_duplicate_payment_and_refund,
}


async def run(scenarios: list[int]) -> None:
    with tempfile.TemporaryDirectory() as workdir:
        for num in scenarios:
            # each scenario gets a fresh database so seller onboarding is repeatable
            scenario_dir = Path(workdir) / f"s{num}"
            scenario_dir.mkdir()
            market = await open_marketplace(scenario_dir)
            try:
                await SCENARIOS[num](market)
            finally:
                await market.engine.dispose()

    banner("SIMULATION COMPLETE")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Marketplace Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        choices=sorted(SCENARIOS),
        help="Run a single scenario (default: all)",
    )
    args = parser.parse_args()
    asyncio.run(run([args.scenario] if args.scenario else sorted(SCENARIOS)))
