"""Shared test fixtures for the Marketplace Escrow test suite.

Provides:
    - A file-backed SQLite database per test (aiosqlite), so separate
      sessions really run concurrently against the same data
    - The in-memory payment gateway
    - Recording / failing notification and email adapters
    - Seeded listing and seller payout account
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.enums import ListingStatus
from marketplace_escrow.domain.gateway_protocol import AccountStatus
from marketplace_escrow.infrastructure.database.engine import build_engine, build_session_factory
from marketplace_escrow.infrastructure.database.orm_models import (
    Base,
    ConnectedAccount,
    Listing,
)
from marketplace_escrow.infrastructure.database.repositories import ListingRepository
from marketplace_escrow.infrastructure.payments.simulated import SimulatedPaymentGateway
from tests.helpers import (
    LISTING_PRICE,
    SELLER_ACCOUNT_ID,
    SELLER_ID,
    RecordingEmailSender,
    RecordingNotifier,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


# ---------------------------------------------------------------------------
# Configuration & database
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        app_env="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        stripe_secret_key="",
        email_api_key="",
        platform_fee_percentage=Decimal("5.0"),
        escrow_hold_days=7,
        side_effect_timeout_seconds=0.2,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def listing(session_factory: async_sessionmaker[AsyncSession]) -> Listing:
    """An active listing priced at 5000 minor units, owned by SELLER_ID."""
    async with session_factory() as session:
        listing = await ListingRepository(session).create(
            Listing(
                seller_id=SELLER_ID,
                title="12yo Hanoverian gelding",
                price=LISTING_PRICE,
                status=ListingStatus.ACTIVE.value,
            )
        )
        await session.commit()
    return listing


@pytest_asyncio.fixture
async def seller_account(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: SimulatedPaymentGateway,
) -> ConnectedAccount:
    """A fully set up payout account for SELLER_ID, known to the gateway too."""
    status = AccountStatus(
        account_id=SELLER_ACCOUNT_ID,
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )
    gateway.set_account(status)
    async with session_factory() as session:
        account = ConnectedAccount(
            user_id=SELLER_ID,
            processor_account_id=SELLER_ACCOUNT_ID,
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
        )
        session.add(account)
        await session.commit()
    return account

