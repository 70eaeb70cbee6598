"""Role-scoped status transition rules."""

import pytest

from orderflow.core.exceptions import InvalidStatus, OrderValidationError, TerminalState
from orderflow.domain import OrderStatus, StaffRole
from orderflow.services.transitions import can_transition, ensure_transition


@pytest.mark.parametrize("target", list(OrderStatus))
def test_admin_may_request_any_status(target):
    current = OrderStatus.PREPARING
    decision = can_transition(current, target, StaffRole.ADMIN)
    assert decision.allowed


@pytest.mark.parametrize("target", ["confirmed", "preparing", "ready"])
def test_chef_targets(target):
    assert can_transition("pending", target, "chef").allowed


@pytest.mark.parametrize("target", ["served", "completed", "cancelled"])
def test_chef_cannot_serve_or_cancel(target):
    decision = can_transition("preparing", target, "chef")
    assert not decision.allowed
    assert decision.code == "role"
    assert decision.reason == "Chef can only update status to CONFIRMED, PREPARING, or READY"


def test_waiter_targets():
    assert can_transition("ready", "served", "waiter").allowed
    assert can_transition("served", "completed", "waiter").allowed

    decision = can_transition("pending", "preparing", "waiter")
    assert not decision.allowed
    assert "Waiter can only update status" in decision.reason


def test_customer_can_only_cancel_early():
    assert can_transition("pending", "cancelled", "customer").allowed
    assert can_transition("confirmed", "cancelled", "customer").allowed

    late = can_transition("preparing", "cancelled", "customer")
    assert not late.allowed
    assert late.code == "role"

    assert not can_transition("pending", "confirmed", "customer").allowed


def test_system_only_confirms_pending_orders():
    assert can_transition("pending", "confirmed", StaffRole.SYSTEM).allowed
    assert not can_transition("preparing", "confirmed", StaffRole.SYSTEM).allowed
    assert not can_transition("pending", "ready", StaffRole.SYSTEM).allowed


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
@pytest.mark.parametrize("role", ["admin", "chef", "waiter", "customer"])
def test_terminal_orders_never_move(terminal, role):
    decision = can_transition(terminal, "pending", role)
    assert not decision.allowed
    assert decision.code == "terminal"


def test_terminal_checked_before_same_status():
    decision = can_transition("completed", "completed", "admin")
    assert decision.code == "terminal"


def test_same_status_is_noop_by_default():
    decision = can_transition("preparing", "preparing", "customer")
    assert decision.allowed
    assert decision.is_noop


def test_same_status_rejected_in_strict_mode():
    decision = can_transition("preparing", "preparing", "chef", allow_same_status=False)
    assert not decision.allowed
    assert decision.code == "same_status"


def test_status_values_are_normalized():
    assert can_transition(" Pending ", "CONFIRMED", "Chef").allowed


def test_unknown_status_raises_invalid_status():
    with pytest.raises(InvalidStatus):
        can_transition("pending", "on_fire", "admin")
    with pytest.raises(InvalidStatus):
        can_transition("lost", "pending", "admin")


def test_unknown_role_is_a_validation_error():
    with pytest.raises(OrderValidationError):
        can_transition("pending", "confirmed", "dishwasher")


def test_ensure_transition_maps_denials_to_errors():
    with pytest.raises(TerminalState):
        ensure_transition("cancelled", "pending", "admin")
    with pytest.raises(OrderValidationError, match="Customers can only cancel"):
        ensure_transition("pending", "ready", "customer")

    assert ensure_transition("pending", "confirmed", "chef").allowed
