"""Best-effort execution of post-commit side effects.

Notifications and emails run after the business transaction has committed.
They are bounded by a timeout, and their failures are logged, never raised:
a user-experience failure must not turn a recorded sale into an error.

Services collect what they want to send in a SideEffectOutbox while their
unit of work is open and flush it once the commit has succeeded. A rolled
back unit of work simply discards its outbox.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from marketplace_escrow.domain.enums import EmailTemplate, NotificationType
    from marketplace_escrow.domain.gateway_protocol import EmailSender, NotificationDispatcher

logger = get_logger(__name__)


async def run_best_effort(
    awaitable: Awaitable[None],
    event: str,
    timeout_seconds: float,
    **context,
) -> bool:
    """Await a side effect; return False (after logging) if it failed or timed out."""
    try:
        await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError:
        logger.warning(f"{event}_timeout", timeout_seconds=timeout_seconds, **context)
        return False
    except Exception as exc:
        logger.warning(
            f"{event}_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            **context,
        )
        return False
    return True


@dataclass(frozen=True)
class _Notification:
    user_id: str
    notification_type: NotificationType
    payload: dict


@dataclass(frozen=True)
class _Email:
    recipient: str
    template: EmailTemplate
    template_data: dict


class SideEffectOutbox:
    """Notifications and emails queued during a unit of work."""

    def __init__(
        self,
        notifier: NotificationDispatcher | None,
        email_sender: EmailSender | None,
        timeout_seconds: float,
    ) -> None:
        self._notifier = notifier
        self._email_sender = email_sender
        self._timeout = timeout_seconds
        self._items: list[_Notification | _Email] = []

    def __len__(self) -> int:
        return len(self._items)

    def notify(self, user_id: str, notification_type: NotificationType, payload: dict) -> None:
        if self._notifier is not None:
            self._items.append(_Notification(user_id, notification_type, payload))

    def email(self, recipient: str | None, template: EmailTemplate, template_data: dict) -> None:
        """Queue an email. Parties without a known address are skipped."""
        if self._email_sender is not None and recipient:
            self._items.append(_Email(recipient, template, template_data))

    def discard(self) -> None:
        self._items.clear()

    async def flush(self) -> int:
        """Send everything queued so far. Returns how many were delivered."""
        items, self._items = self._items, []
        delivered = 0
        for item in items:
            if isinstance(item, _Notification):
                ok = await run_best_effort(
                    self._notifier.notify(item.user_id, item.notification_type, item.payload),
                    "notification.dispatch",
                    self._timeout,
                    user_id=item.user_id,
                    notification_type=str(item.notification_type),
                )
            else:
                ok = await run_best_effort(
                    self._email_sender.send(item.recipient, item.template, item.template_data),
                    "email.send",
                    self._timeout,
                    recipient=item.recipient,
                    template=str(item.template),
                )
            delivered += int(ok)
        return delivered
