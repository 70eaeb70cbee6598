"""
Status Transition Validator

Pure functions over a declarative role table. Nothing here touches the
store; the workflow service consults it once per request.
"""

from dataclasses import dataclass
from typing import Optional

from orderflow.core.exceptions import OrderValidationError, TerminalState
from orderflow.domain import (
    OrderStatus,
    StaffRole,
    TERMINAL_STATUSES,
    parse_role,
    parse_status,
)

ALL_STATUSES = frozenset(OrderStatus)

# Target statuses each role may request. Unlisted roles get nothing.
ROLE_TARGETS: dict[StaffRole, frozenset[OrderStatus]] = {
    StaffRole.ADMIN: ALL_STATUSES,
    StaffRole.CHEF: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
    }),
    StaffRole.WAITER: frozenset({
        OrderStatus.READY,
        OrderStatus.SERVED,
        OrderStatus.COMPLETED,
    }),
    StaffRole.CUSTOMER: frozenset({OrderStatus.CANCELLED}),
    StaffRole.SYSTEM: frozenset({OrderStatus.CONFIRMED}),
}

# Roles that may only move an order out of specific statuses.
ROLE_SOURCES: dict[StaffRole, frozenset[OrderStatus]] = {
    StaffRole.CUSTOMER: frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED}),
    StaffRole.SYSTEM: frozenset({OrderStatus.PENDING}),
}

ROLE_DENIAL_MESSAGES: dict[StaffRole, str] = {
    StaffRole.CHEF: "Chef can only update status to CONFIRMED, PREPARING, or READY",
    StaffRole.WAITER: "Waiter can only update status to READY, SERVED, or COMPLETED",
    StaffRole.CUSTOMER: "Customers can only cancel orders",
    StaffRole.SYSTEM: "System can only confirm pending orders",
}


@dataclass(frozen=True)
class TransitionDecision:
    """
    Outcome of a transition check.

    Attributes:
        allowed: Whether the transition may proceed
        code: "ok", "noop", "terminal", "same_status" or "role"
        reason: Human-readable explanation for denials
    """
    allowed: bool
    code: str = "ok"
    reason: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.allowed and self.code == "noop"


def can_transition(
    current,
    requested,
    actor_role,
    *,
    allow_same_status: bool = True,
) -> TransitionDecision:
    """
    Decide whether ``actor_role`` may move an order from ``current`` to ``requested``.

    Raises:
        InvalidStatus: If either status is not part of the workflow
    """
    current = parse_status(current)
    requested = parse_status(requested)
    role = parse_role(actor_role)

    if current in TERMINAL_STATUSES:
        return TransitionDecision(
            allowed=False,
            code="terminal",
            reason=f"Order is already {current.value} and cannot change",
        )

    if current == requested:
        if allow_same_status:
            return TransitionDecision(allowed=True, code="noop")
        return TransitionDecision(
            allowed=False,
            code="same_status",
            reason=f"Order is already {current.value}",
        )

    if requested not in ROLE_TARGETS.get(role, frozenset()):
        return TransitionDecision(
            allowed=False,
            code="role",
            reason=ROLE_DENIAL_MESSAGES.get(role, f"Role {role.value} cannot change order status"),
        )

    sources = ROLE_SOURCES.get(role)
    if sources is not None and current not in sources:
        return TransitionDecision(
            allowed=False,
            code="role",
            reason=(
                f"{role.value.capitalize()} cannot move an order from "
                f"{current.value} to {requested.value}"
            ),
        )

    return TransitionDecision(allowed=True)


def ensure_transition(current, requested, actor_role, *, allow_same_status: bool = True) -> TransitionDecision:
    """Like ``can_transition`` but raise on denial."""
    decision = can_transition(
        current, requested, actor_role, allow_same_status=allow_same_status
    )
    if decision.allowed:
        return decision
    if decision.code == "terminal":
        raise TerminalState(decision.reason)
    raise OrderValidationError(decision.reason)
