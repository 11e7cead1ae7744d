"""Tests for the offer and transaction state machine guards.

These tests verify that:
    1. All valid transitions are allowed.
    2. Terminal states reject every event.
    3. The validate_* convenience functions report the new status.
    4. An expired offer can only be re-opened by an extension.
"""

from __future__ import annotations

import warnings

import pytest
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.state_machine import (
    OfferStateMachine,
    TransactionStateMachine,
    validate_offer_transition,
    validate_transaction_transition,
)


class TestOfferTransitions:
    @pytest.mark.parametrize(
        ("event", "target"),
        [
            ("accept", "accepted"),
            ("reject", "rejected"),
            ("counter", "countered"),
            ("cancel", "cancelled"),
            ("expire", "expired"),
        ],
    )
    def test_from_pending(self, event: str, target: str) -> None:
        sm = OfferStateMachine("pending")
        getattr(sm, event)()
        assert sm.status == target

    def test_extend_reopens_expired(self) -> None:
        sm = OfferStateMachine("expired")
        sm.extend()
        assert sm.status == "pending"

    def test_extend_then_accept(self) -> None:
        sm = OfferStateMachine("expired")
        sm.extend()
        sm.accept()
        assert sm.status == "accepted"


class TestOfferTerminalStates:
    @pytest.mark.parametrize("status", ["accepted", "rejected", "countered", "cancelled"])
    @pytest.mark.parametrize("event", ["accept", "reject", "counter", "cancel", "expire", "extend"])
    def test_closed_offer_rejects_every_event(self, status: str, event: str) -> None:
        sm = OfferStateMachine(status)
        with pytest.raises(TransitionNotAllowed):
            getattr(sm, event)()

    @pytest.mark.parametrize("event", ["accept", "reject", "counter", "cancel", "expire"])
    def test_expired_only_allows_extend(self, event: str) -> None:
        sm = OfferStateMachine("expired")
        with pytest.raises(TransitionNotAllowed):
            getattr(sm, event)()

    def test_pending_cannot_be_extended(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            OfferStateMachine("pending").extend()


class TestOfferAllowedEvents:
    def test_pending(self) -> None:
        allowed = set(OfferStateMachine("pending").get_allowed_events())
        assert allowed == {"accept", "reject", "counter", "cancel", "expire"}

    def test_expired(self) -> None:
        assert OfferStateMachine("expired").get_allowed_events() == ["extend"]

    def test_accepted_has_none(self) -> None:
        assert OfferStateMachine("accepted").get_allowed_events() == []


class TestValidateOfferTransition:
    def test_returns_new_status(self) -> None:
        assert validate_offer_transition("pending", "accept") == "accepted"

    def test_illegal_transition(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_offer_transition("accepted", "reject")

    def test_unknown_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            validate_offer_transition("bogus", "accept")

    def test_unknown_event(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_offer_transition("pending", "teleport")


class TestTransactionTransitions:
    def test_release_from_held(self) -> None:
        sm = TransactionStateMachine("payment_held")
        sm.release()
        assert sm.status == "completed"

    def test_cannot_release_twice(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            TransactionStateMachine("completed").release()

    @pytest.mark.parametrize("status", ["payment_held", "completed", "partially_refunded", "disputed"])
    def test_full_refund(self, status: str) -> None:
        assert validate_transaction_transition(status, "refund_full") == "refunded"

    def test_partial_refund_can_repeat(self) -> None:
        assert (
            validate_transaction_transition("partially_refunded", "refund_partial")
            == "partially_refunded"
        )

    def test_refunded_is_final(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transaction_transition("refunded", "refund_partial")

    def test_hold_from_pending_or_processing(self) -> None:
        assert validate_transaction_transition("pending", "hold_payment") == "payment_held"
        assert (
            validate_transaction_transition("payment_processing", "hold_payment")
            == "payment_held"
        )

    def test_dispute_only_from_held(self) -> None:
        assert validate_transaction_transition("payment_held", "open_dispute") == "disputed"
        with pytest.raises(TransitionNotAllowed):
            validate_transaction_transition("completed", "open_dispute")

    def test_processing_can_be_cancelled(self) -> None:
        assert validate_transaction_transition("pending", "start_processing") == "payment_processing"
        assert validate_transaction_transition("payment_processing", "cancel") == "cancelled"
        with pytest.raises(TransitionNotAllowed):
            validate_transaction_transition("payment_held", "cancel")


class TestStatusProperty:
    @pytest.mark.parametrize("machine", [OfferStateMachine, TransactionStateMachine])
    def test_reading_status_emits_no_deprecation_warning(self, machine: type) -> None:
        sm = machine()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert sm.status == "pending"
            assert sm.get_allowed_events()
