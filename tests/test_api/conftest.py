"""HTTP-level fixtures: the FastAPI app wired to the test database and fakes."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest_asyncio

from marketplace_escrow.api import deps
from marketplace_escrow.main import create_app

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@pytest_asyncio.fixture
async def client(
    session_factory, gateway, notifier, email_sender, settings  # noqa: ANN001
) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app()

    async def _session():  # noqa: ANN202
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[deps.get_db_session] = _session
    app.dependency_overrides[deps.get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_email_sender] = lambda: email_sender
    app.dependency_overrides[deps.get_app_settings] = lambda: settings

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
