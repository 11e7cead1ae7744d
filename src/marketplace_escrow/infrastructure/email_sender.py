"""Transactional email over an HTTP email API.

Each EmailTemplate has a renderer that turns template data into a subject
and an HTML body. In simulation mode (no API key configured) messages are
logged instead of sent. Failures raise EmailSendError; callers treat email
as best effort.
"""

from __future__ import annotations

from collections.abc import Callable
from html import escape

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import EmailTemplate
from marketplace_escrow.domain.exceptions import EmailSendError
from marketplace_escrow.domain.money import format_minor_units
from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)


class _RetryableStatus(Exception):
    """A 429 or 5xx from the email API."""


def _title(data: dict) -> str:
    return escape(str(data.get("listing_title") or "your listing"))


def _amount(data: dict) -> str:
    return format_minor_units(int(data.get("amount", 0)))


def _link(url: str | None, label: str) -> str:
    return f'<p><a href="{escape(url)}">{label}</a></p>' if url else ""


def _quote(message: str | None) -> str:
    return f"<blockquote>{escape(message)}</blockquote>" if message else ""


def render_offer_received(data: dict) -> tuple[str, str]:
    title = _title(data)
    html = (
        f"<p>You received an offer of <strong>{_amount(data)}</strong> on {title}.</p>"
        + _quote(data.get("message"))
        + "<p>Accept, counter or decline it before it expires.</p>"
        + _link(data.get("offer_url"), "Review offer")
    )
    return f"New offer on {title}", html


def render_offer_accepted(data: dict) -> tuple[str, str]:
    title = _title(data)
    checkout_url = data.get("checkout_url")
    next_step = (
        "<p>Complete the payment to secure the purchase. Funds are held in escrow "
        "until you confirm receipt.</p>"
        if checkout_url
        else "<p>The buyer will now complete the payment.</p>"
    )
    html = (
        f"<p>Your offer of <strong>{_amount(data)}</strong> on {title} was accepted.</p>"
        + _quote(data.get("message"))
        + next_step
        + _link(checkout_url, "Continue to checkout")
    )
    return f"Your offer on {title} was accepted", html


def render_offer_rejected(data: dict) -> tuple[str, str]:
    title = _title(data)
    html = (
        f"<p>Your offer of <strong>{_amount(data)}</strong> on {title} was declined.</p>"
        + _quote(data.get("message"))
        + _link(data.get("listing_url"), "View listing")
    )
    return f"Update on your offer for {title}", html


def render_counter_offer(data: dict) -> tuple[str, str]:
    title = _title(data)
    previous = data.get("previous_amount")
    was = f" (was {format_minor_units(int(previous))})" if previous is not None else ""
    html = (
        f"<p>You received a counter offer of <strong>{_amount(data)}</strong>{was} "
        f"on {title}.</p>"
        + _quote(data.get("message"))
        + _link(data.get("offer_url"), "Respond to counter offer")
    )
    return f"Counter offer on {title}", html


def render_offer_expired(data: dict) -> tuple[str, str]:
    title = _title(data)
    html = (
        f"<p>Your offer of <strong>{_amount(data)}</strong> on {title} expired "
        "without a response.</p>"
        "<p>You can extend it to give the seller more time.</p>"
        + _link(data.get("offer_url"), "Extend offer")
    )
    return f"Your offer on {title} has expired", html


def render_payment_confirmation(data: dict) -> tuple[str, str]:
    """Build (subject, html) for the buyer's payment confirmation."""
    title = escape(str(data.get("listing_title") or "your purchase"))
    release = escape(str(data.get("escrow_release_date", "")))
    html = (
        f"<p>Your payment of <strong>{_amount(data)}</strong> for {title} was received.</p>"
        f"<p>Funds are held in escrow until {release}. Release them early once you "
        f"have received the item.</p>"
        + _link(data.get("transaction_url"), "View transaction")
    )
    return f"Payment confirmed: {title}", html


def render_escrow_released(data: dict) -> tuple[str, str]:
    title = _title(data)
    if data.get("recipient_type") == "seller":
        subject = f"Payment released for {title}"
        body = (
            f"<p><strong>{_amount(data)}</strong> for {title} has been released "
            "to your payout account.</p>"
        )
    else:
        subject = f"Transaction complete for {title}"
        body = f"<p>The escrow for {title} has been released to the seller.</p>"
    return subject, body + _link(data.get("transaction_url"), "View transaction")


RENDERERS: dict[EmailTemplate, Callable[[dict], tuple[str, str]]] = {
    EmailTemplate.OFFER_RECEIVED: render_offer_received,
    EmailTemplate.OFFER_ACCEPTED: render_offer_accepted,
    EmailTemplate.OFFER_REJECTED: render_offer_rejected,
    EmailTemplate.COUNTER_OFFER: render_counter_offer,
    EmailTemplate.OFFER_EXPIRED: render_offer_expired,
    EmailTemplate.PAYMENT_CONFIRMATION: render_payment_confirmation,
    EmailTemplate.ESCROW_RELEASED: render_escrow_released,
}


def render(template: str, template_data: dict) -> tuple[str, str]:
    """Return (subject, html). Raises ValueError for an unknown template."""
    return RENDERERS[EmailTemplate(template)](template_data)


class HttpEmailSender:
    """EmailSender that posts to a Resend-compatible HTTP API."""

    def __init__(
        self,
        api_key: str,
        api_url: str,
        from_address: str,
        timeout_seconds: float = 10.0,
        simulate: bool = False,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url
        self._from = from_address
        self._timeout = timeout_seconds
        self._simulate = simulate

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> HttpEmailSender:
        settings = settings or get_settings()
        return cls(
            api_key=settings.email_api_key,
            api_url=settings.email_api_url,
            from_address=settings.email_from,
            timeout_seconds=settings.side_effect_timeout_seconds,
            simulate=settings.email_simulated,
        )

    async def send(self, recipient: str, template: str, template_data: dict) -> None:
        subject, html = render(template, template_data)

        if self._simulate:
            logger.info(
                "email.simulated", recipient=recipient, template=str(template), subject=subject
            )
            return

        try:
            message_id = await self._post({
                "from": self._from,
                "to": [recipient],
                "subject": subject,
                "html": html,
            })
        except (httpx.HTTPError, _RetryableStatus) as exc:
            raise EmailSendError(recipient, str(exc)) from exc

        logger.info(
            "email.sent", recipient=recipient, template=str(template), message_id=message_id
        )

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _post(self, body: dict) -> str | None:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=5.0)) as client:
            resp = await client.post(
                self._api_url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _RetryableStatus(f"email API returned {resp.status_code}")
        resp.raise_for_status()
        return resp.json().get("id")
