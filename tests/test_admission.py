"""Unit tests for admission control and the reservation ledger.

WHY: Admission is what stops a user from queueing more audio than they
can pay for. Without the local reservation ledger, files submitted
together would each see the full balance and all be admitted.

HOW: Tests are organized by concern:
  - TestAdmitDecision: the pure admit() function
  - TestController: balance, reservations, confirm/release
  - TestSession: unauthenticated sessions fail closed
"""

from __future__ import annotations

import pytest

from fakes import ANONYMOUS, SESSION
from tokenscribe.core.admission import Admission, AdmissionController, admit
from tokenscribe.core.errors import ADMISSION, InsufficientBalance, Unauthorized


class TestAdmitDecision:
    """admit() accepts iff available >= required."""

    def test_accepts_when_balance_covers_cost(self):
        decision = admit(30, 100)
        assert decision.accepted
        assert decision.shortfall is None

    def test_accepts_exact_balance(self):
        assert admit(100, 100).accepted

    def test_rejects_with_shortfall(self):
        decision = admit(200, 100)
        assert not decision.accepted
        assert decision.shortfall == {"required": 200, "available": 100}

    def test_is_idempotent(self):
        assert admit(50, 40) == admit(50, 40)
        assert admit(10, 40) == admit(10, 40)

    def test_rejection_converts_to_admission_error(self):
        error = admit(50, 40).to_error()
        assert isinstance(error, InsufficientBalance)
        assert error.source == ADMISSION
        assert error.shortfall == {"required": 50, "available": 40}


class TestController:
    """AdmissionController tracks reservations against the cached balance."""

    def test_unknown_balance_admits_nothing(self):
        controller = AdmissionController()
        assert controller.available == 0
        assert not controller.admit(SESSION, 1).accepted

    def test_free_item_admitted_with_unknown_balance(self):
        controller = AdmissionController()
        assert controller.admit(SESSION, 0).accepted

    def test_reservation_reduces_available(self):
        controller = AdmissionController(balance=100)
        assert controller.admit(SESSION, 60).accepted
        controller.reserve("a", 60)
        assert controller.reserved == 60
        assert controller.available == 40

    def test_second_item_rejected_against_reserved_balance(self):
        controller = AdmissionController(balance=100)
        controller.reserve("a", 60)
        decision = controller.admit(SESSION, 50)
        assert decision == Admission(accepted=False, required=50, available=40)

    def test_rejection_does_not_touch_ledger(self):
        controller = AdmissionController(balance=100)
        controller.admit(SESSION, 500)
        assert controller.reserved == 0
        assert controller.balance == 100

    def test_double_reservation_raises(self):
        controller = AdmissionController(balance=100)
        controller.reserve("a", 10)
        with pytest.raises(ValueError):
            controller.reserve("a", 10)

    def test_release_returns_tokens_once(self):
        controller = AdmissionController(balance=100)
        controller.reserve("a", 10)
        assert controller.release("a") == 10
        assert controller.release("a") == 0
        assert controller.available == 100

    def test_confirm_swaps_reservation_for_new_balance(self):
        controller = AdmissionController(balance=100)
        controller.reserve("a", 60)
        controller.confirm("a", 40)
        assert controller.reserved == 0
        assert controller.balance == 40
        assert controller.available == 40

    def test_available_never_negative(self):
        controller = AdmissionController(balance=10)
        controller.reserve("a", 10)
        controller.update_balance(0)
        assert controller.available == 0

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError):
            AdmissionController().update_balance(-1)


class TestSession:
    def test_unauthenticated_session_raises(self):
        controller = AdmissionController(balance=100)
        with pytest.raises(Unauthorized):
            controller.admit(ANONYMOUS, 1)


class TestBalanceOrdering:
    """Late balance answers never hand back tokens a settlement spent."""

    def test_out_of_order_settlements_keep_lowest_balance(self):
        controller = AdmissionController(balance=100)
        controller.reserve("a", 30)
        controller.reserve("b", 30)
        controller.confirm("b", 40)
        controller.confirm("a", 70)
        assert controller.balance == 40
        assert controller.available == 40

    def test_read_issued_before_settlement_is_discarded(self):
        controller = AdmissionController(balance=100)
        controller.reserve("a", 60)
        ticket = controller.ticket()
        controller.confirm("a", 40)
        assert controller.update_balance(100, ticket) is False
        assert controller.available == 40
        assert not controller.admit(SESSION, 60).accepted

    def test_read_issued_after_settlement_applies(self):
        controller = AdmissionController(balance=100)
        controller.reserve("a", 60)
        controller.confirm("a", 40)
        ticket = controller.ticket()
        assert controller.update_balance(500, ticket) is True
        assert controller.balance == 500

    def test_untagged_update_always_applies(self):
        controller = AdmissionController(balance=100)
        controller.confirm("a", 40)
        controller.update_balance(90)
        assert controller.balance == 90

    def test_lower_balance_sets_unknown_balance(self):
        controller = AdmissionController()
        controller.lower_balance(25)
        assert controller.balance == 25
