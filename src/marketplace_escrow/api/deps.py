"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the session factory, the payment gateway, side-effect adapters and the
services built from them. Tests override the leaf providers
(session factory, gateway, notifier, email sender, settings).
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.gateway_protocol import (  # noqa: TC001
    EmailSender,
    NotificationDispatcher,
    PaymentGateway,
)
from marketplace_escrow.infrastructure.database.engine import (
    get_async_session,
    get_session_factory,
)
from marketplace_escrow.infrastructure.email_sender import HttpEmailSender
from marketplace_escrow.infrastructure.notifications import DatabaseNotificationDispatcher
from marketplace_escrow.infrastructure.payments import build_payment_gateway
from marketplace_escrow.services.expiration_sweeper import ExpirationSweeper
from marketplace_escrow.services.offer_service import OfferService
from marketplace_escrow.services.processor_events import ProcessorEventHandler
from marketplace_escrow.services.release_service import ReleaseService
from marketplace_escrow.services.settlement_service import SettlementMaterializer
from marketplace_escrow.services.transaction_service import TransactionService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the session factory for services that own their commit boundary."""
    return get_session_factory()


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    """Provide the process-wide payment gateway (Stripe or simulated)."""
    return build_payment_gateway(get_settings())


def get_notifier(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> NotificationDispatcher:
    return DatabaseNotificationDispatcher(factory)


def get_email_sender(settings: Settings = Depends(get_app_settings)) -> EmailSender:
    return HttpEmailSender.from_settings(settings)


def get_offer_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    notifier: NotificationDispatcher = Depends(get_notifier),
    email_sender: EmailSender = Depends(get_email_sender),
) -> OfferService:
    """OfferService bound to the request session; routes commit, then dispatch."""
    return OfferService(session, settings, notifier, email_sender)


def get_transaction_service(
    session: AsyncSession = Depends(get_db_session),
) -> TransactionService:
    return TransactionService(session)


def get_materializer(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
    email_sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_app_settings),
) -> SettlementMaterializer:
    return SettlementMaterializer(factory, gateway, notifier, email_sender, settings)


def get_release_service(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
    email_sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_app_settings),
) -> ReleaseService:
    return ReleaseService(factory, gateway, notifier, settings, email_sender)


def get_sweeper(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    notifier: NotificationDispatcher = Depends(get_notifier),
    email_sender: EmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_app_settings),
) -> ExpirationSweeper:
    return ExpirationSweeper(factory, notifier, settings, email_sender)


def get_processor_event_handler(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    materializer: SettlementMaterializer = Depends(get_materializer),
    release_service: ReleaseService = Depends(get_release_service),
) -> ProcessorEventHandler:
    return ProcessorEventHandler(factory, gateway, materializer, release_service)
