"""Tests for the notification dispatcher, email sender and best-effort runner."""

from __future__ import annotations

import asyncio

import pytest

from marketplace_escrow.domain.enums import EmailTemplate, NotificationType
from marketplace_escrow.domain.exceptions import NotificationDispatchError
from marketplace_escrow.infrastructure.database.repositories import NotificationRepository
from marketplace_escrow.infrastructure.email_sender import (
    RENDERERS,
    HttpEmailSender,
    render,
    render_counter_offer,
    render_escrow_released,
    render_offer_accepted,
    render_payment_confirmation,
)
from marketplace_escrow.infrastructure.notifications import DatabaseNotificationDispatcher
from marketplace_escrow.services.side_effects import SideEffectOutbox, run_best_effort
from tests.helpers import FailingNotifier, RecordingEmailSender, RecordingNotifier


class TestDatabaseNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_stores_rendered_notification(self, session_factory) -> None:
        dispatcher = DatabaseNotificationDispatcher(session_factory)

        await dispatcher.notify(
            "seller-1",
            NotificationType.SALE_COMPLETED,
            {"transaction_id": "t-1", "amount": 5000},
        )

        async with session_factory() as session:
            rows = await NotificationRepository(session).get_by_user("seller-1")
        assert len(rows) == 1
        assert rows[0].type == "sale_completed"
        assert "$50.00" in rows[0].message
        assert rows[0].link == "/transactions/t-1"
        assert rows[0].is_read is False

    @pytest.mark.asyncio
    async def test_database_failure_is_wrapped(self, engine, session_factory) -> None:
        async with engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE notifications")

        with pytest.raises(NotificationDispatchError):
            await DatabaseNotificationDispatcher(session_factory).notify(
                "seller-1", NotificationType.SALE_COMPLETED, {"amount": 5000}
            )


class TestEmailSender:
    def test_render(self) -> None:
        subject, html = render_payment_confirmation(
            {
                "amount": 5000,
                "escrow_release_date": "2026-03-08",
                "transaction_url": "https://example.com/transactions/t-1",
            }
        )
        assert subject == "Payment confirmed: your purchase"
        assert "$50.00" in html
        assert "2026-03-08" in html
        assert 'href="https://example.com/transactions/t-1"' in html

    @pytest.mark.asyncio
    async def test_simulated_send_does_not_touch_network(self, settings) -> None:
        sender = HttpEmailSender.from_settings(settings)
        # no API key configured: logged only
        await sender.send("buyer@example.com", EmailTemplate.PAYMENT_CONFIRMATION, {"amount": 5000})

    def test_every_template_has_a_renderer(self) -> None:
        assert set(RENDERERS) == set(EmailTemplate)
        for template in EmailTemplate:
            subject, html = render(template, {"amount": 1250, "listing_title": "Saddle"})
            assert "Saddle" in subject
            assert html.startswith("<p>")

    def test_unknown_template(self) -> None:
        with pytest.raises(ValueError):
            render("newsletter", {})

    def test_user_text_is_escaped(self) -> None:
        _, html = render_counter_offer(
            {
                "amount": 4000,
                "previous_amount": 3500,
                "listing_title": "<b>Mare</b>",
                "message": "<script>x</script>",
            }
        )
        assert "<script>" not in html
        assert "&lt;b&gt;Mare&lt;/b&gt;" in html
        assert "was $35.00" in html

    def test_checkout_link_only_for_buyer(self) -> None:
        _, buyer_html = render_offer_accepted(
            {"amount": 4000, "checkout_url": "https://example.com/checkout/o-1"}
        )
        _, seller_html = render_offer_accepted({"amount": 4000})
        assert "Continue to checkout" in buyer_html
        assert "Complete the payment" in buyer_html
        assert "Continue to checkout" not in seller_html
        assert "Complete the payment" not in seller_html

    def test_escrow_released_by_recipient(self) -> None:
        seller_subject, seller_html = render_escrow_released(
            {"amount": 4750, "listing_title": "Saddle", "recipient_type": "seller"}
        )
        buyer_subject, _ = render_escrow_released(
            {"amount": 4750, "listing_title": "Saddle", "recipient_type": "buyer"}
        )
        assert seller_subject == "Payment released for Saddle"
        assert "$47.50" in seller_html
        assert buyer_subject == "Transaction complete for Saddle"


class TestSideEffectOutbox:
    @pytest.mark.asyncio
    async def test_flush_delivers_in_order(self) -> None:
        notifier, sender = RecordingNotifier(), RecordingEmailSender()
        outbox = SideEffectOutbox(notifier, sender, 1.0)
        outbox.notify("seller-1", NotificationType.OFFER_RECEIVED, {"offer_id": "o-1"})
        outbox.email("seller@example.com", EmailTemplate.OFFER_RECEIVED, {"amount": 100})

        assert len(outbox) == 2
        assert await outbox.flush() == 2
        assert len(outbox) == 0
        assert notifier.sent == [("seller-1", "offer_received", {"offer_id": "o-1"})]
        assert sender.templates_for("seller@example.com") == ["offer_received"]

    @pytest.mark.asyncio
    async def test_recipients_without_address_are_skipped(self) -> None:
        sender = RecordingEmailSender()
        outbox = SideEffectOutbox(None, sender, 1.0)
        outbox.email(None, EmailTemplate.OFFER_EXPIRED, {})
        outbox.notify("buyer-1", NotificationType.OFFER_EXPIRED, {})

        assert len(outbox) == 0
        assert await outbox.flush() == 0

    @pytest.mark.asyncio
    async def test_discard_drops_everything(self) -> None:
        notifier = RecordingNotifier()
        outbox = SideEffectOutbox(notifier, None, 1.0)
        outbox.notify("buyer-1", NotificationType.OFFER_ACCEPTED, {})
        outbox.discard()

        assert await outbox.flush() == 0
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self) -> None:
        outbox = SideEffectOutbox(FailingNotifier(), None, 1.0)
        outbox.notify("buyer-1", NotificationType.OFFER_ACCEPTED, {})
        outbox.notify("buyer-2", NotificationType.OFFER_ACCEPTED, {})

        assert await outbox.flush() == 0


class TestRunBestEffort:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        async def ok() -> None:
            return None

        assert await run_best_effort(ok(), "test.effect", 1.0) is True

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self) -> None:
        async def boom() -> None:
            raise RuntimeError("down")

        assert await run_best_effort(boom(), "test.effect", 1.0) is False

    @pytest.mark.asyncio
    async def test_timeout_is_swallowed(self) -> None:
        assert await run_best_effort(asyncio.sleep(5), "test.effect", 0.05) is False
