"""In-app notification dispatcher.

Writes a row to the notifications table in its own session, so a failed
notification can never roll back the business transaction that caused it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from marketplace_escrow.domain.enums import NotificationType
from marketplace_escrow.domain.exceptions import NotificationDispatchError
from marketplace_escrow.domain.money import format_minor_units
from marketplace_escrow.infrastructure.database.orm_models import Notification
from marketplace_escrow.infrastructure.database.repositories import NotificationRepository
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


def _render(notification_type: str, payload: dict) -> tuple[str, str, str | None]:
    """Return (title, message, link) for a notification."""
    amount = payload.get("amount")
    money = format_minor_units(int(amount)) if amount is not None else ""
    transaction_id = payload.get("transaction_id")
    offer_id = payload.get("offer_id")
    if transaction_id:
        link = f"/transactions/{transaction_id}"
    elif offer_id:
        link = f"/offers/{offer_id}"
    else:
        link = None
    title = payload.get("listing_title") or "your listing"

    match notification_type:
        case NotificationType.OFFER_RECEIVED:
            return "New offer", f"You received an offer of {money} on {title}.", link
        case NotificationType.OFFER_ACCEPTED:
            return "Offer accepted", f"Your offer of {money} on {title} was accepted.", link
        case NotificationType.OFFER_REJECTED:
            reason = payload.get("reason")
            message = f"Your offer on {title} was declined."
            return "Offer declined", f"{message} {reason}." if reason else message, link
        case NotificationType.OFFER_COUNTERED:
            return "Counter offer", f"You received a counter offer of {money} on {title}.", link
        case NotificationType.SALE_COMPLETED:
            return "Item sold", f"Your listing sold for {money}. Funds are held in escrow.", link
        case NotificationType.PURCHASE_COMPLETED:
            return "Payment received", f"Your payment of {money} is held in escrow.", link
        case NotificationType.OFFER_EXPIRED:
            return (
                "Offer expired",
                "Your offer expired without a response. You can extend it.",
                link,
            )
        case NotificationType.PAYMENT_RELEASED:
            return "Funds released", f"{money} has been released to your payout account.", link
        case NotificationType.PAYMENT_REFUNDED:
            return "Payment refunded", f"Your payment of {money} was refunded.", link
        case NotificationType.PAYMENT_DISPUTED:
            return (
                "Payment disputed",
                f"The buyer disputed the payment of {money}. Funds stay on hold.",
                link,
            )
        case NotificationType.REFUND_REQUESTED:
            return "Refund requested", f"A refund of {money} was requested.", link
        case NotificationType.REFUND_PROCESSED:
            return "Refund processed", f"A refund of {money} was issued.", link
        case _:
            return notification_type.replace("_", " ").capitalize(), "", link


class DatabaseNotificationDispatcher:
    """NotificationDispatcher that stores notifications for the in-app inbox."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def notify(self, user_id: str, notification_type: str, payload: dict) -> None:
        title, message, link = _render(notification_type, payload)
        try:
            async with self._session_factory() as session:
                await NotificationRepository(session).create(
                    Notification(
                        user_id=user_id,
                        type=str(notification_type),
                        title=title,
                        message=message,
                        link=link,
                        payload=payload,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise NotificationDispatchError(user_id, str(notification_type), str(exc)) from exc

        logger.debug("notification.stored", user_id=user_id, type=str(notification_type))
