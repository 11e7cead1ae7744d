"""Offer and Transaction State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain
level. The services check a transition here first and only then issue the
compare-and-swap UPDATE; an illegal transition (e.g. accepted -> rejected)
raises TransitionNotAllowed before any SQL runs.

Offer transition table:
    pending    -> accepted    (accept)
    pending    -> rejected    (reject)
    pending    -> countered   (counter)
    pending    -> cancelled   (cancel)
    pending    -> expired     (expire, system sweep)
    expired    -> pending     (extend)

Transaction transition table:
    pending             -> payment_processing  (start_processing)
    pending             -> payment_held        (hold_payment)
    payment_processing  -> payment_held        (hold_payment)
    pending/processing  -> cancelled           (cancel)
    payment_held        -> completed           (release)
    payment_held        -> disputed            (open_dispute)
    held/completed/partial/disputed -> refunded            (refund_full)
    held/completed/partial/disputed -> partially_refunded  (refund_partial)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _GuardMixin:
    """Shared helpers for the status-string based guards."""

    def _validate_start(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [_event_id(event) for event in self.allowed_events]


class OfferStateMachine(_GuardMixin, StateMachine):
    """State machine that guards offer lifecycle transitions.

    Usage:
        sm = OfferStateMachine(current_status="pending")
        sm.accept()       # transitions to accepted
        sm.status         # "accepted"
    """

    # --- States ---
    pending = State("Pending", initial=True)
    countered = State("Countered", final=True)
    accepted = State("Accepted", final=True)
    rejected = State("Rejected", final=True)
    cancelled = State("Cancelled", final=True)
    expired = State("Expired")

    # --- Seller (or counter-offer buyer) responses ---
    accept = pending.to(accepted)
    reject = pending.to(rejected)
    counter = pending.to(countered)

    # --- Maker actions ---
    cancel = pending.to(cancelled)
    extend = expired.to(pending)

    # --- System sweep ---
    expire = pending.to(expired)

    def __init__(self, current_status: str = "pending") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


class TransactionStateMachine(_GuardMixin, StateMachine):
    """State machine that guards transaction lifecycle transitions."""

    pending = State("Pending", initial=True)
    payment_processing = State("Payment processing")
    payment_held = State("Payment held")
    completed = State("Completed")
    partially_refunded = State("Partially refunded")
    disputed = State("Disputed")
    refunded = State("Refunded", final=True)
    cancelled = State("Cancelled", final=True)

    start_processing = pending.to(payment_processing)
    hold_payment = pending.to(payment_held) | payment_processing.to(payment_held)
    cancel = pending.to(cancelled) | payment_processing.to(cancelled)

    release = payment_held.to(completed)
    open_dispute = payment_held.to(disputed)

    refund_full = (
        payment_held.to(refunded)
        | completed.to(refunded)
        | partially_refunded.to(refunded)
        | disputed.to(refunded)
    )
    refund_partial = (
        payment_held.to(partially_refunded)
        | completed.to(partially_refunded)
        | partially_refunded.to.itself()
        | disputed.to(partially_refunded)
    )

    def __init__(self, current_status: str = "pending") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


def validate_offer_transition(current_status: str, event_name: str) -> str:
    """Validate an offer transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    return _fire(OfferStateMachine(current_status=current_status), event_name)


def validate_transaction_transition(current_status: str, event_name: str) -> str:
    """Transaction counterpart of validate_offer_transition."""
    return _fire(TransactionStateMachine(current_status=current_status), event_name)


def _fire(sm: _GuardMixin, event_name: str) -> str:
    if event_name not in {_event_id(event) for event in sm.events}:
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {sm.status}: {sm.get_allowed_events()}"
        )
    getattr(sm, event_name)()
    return sm.status


def _event_id(event) -> str:  # noqa: ANN001
    # newer python-statemachine releases carry a humanized ``name`` and the key in ``id``
    return getattr(event, "id", None) or event.name
