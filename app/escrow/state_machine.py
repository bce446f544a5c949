# app/escrow/state_machine.py
from __future__ import annotations

from enum import Enum

from app.escrow.errors import InvalidTransition
from app.escrow.model import Role, TransactionStatus as S


class Action(str, Enum):
    REDEEM_INVITE = "redeem_invite"
    SUBMIT_PAYMENT = "submit_payment"
    MARK_DELIVERED = "mark_delivered"
    CONFIRM_RECEIPT = "confirm_receipt"
    RELEASE_FUNDS = "release_funds"
    REQUEST_REFUND = "request_refund"
    APPROVE_REFUND = "approve_refund"
    DENY_REFUND = "deny_refund"
    FILE_DISPUTE = "file_dispute"
    MARK_DISPUTED = "mark_disputed"
    MOVE_TO_DELIVERY = "move_to_delivery"
    DELETE = "delete"
    EXPIRE = "expire"
    MANUAL_OVERRIDE = "manual_override"


TERMINAL = frozenset({S.RELEASED, S.CANCELLED, S.EXPIRED})
NON_TERMINAL = frozenset(S) - TERMINAL

# held and pending_delivery are the same waiting state for every check except
# the admin nudge between them
FUNDED_WAITING = frozenset({S.HELD, S.PENDING_DELIVERY})

# Sentinel target for DELETE: the row goes away instead of changing status
DELETED = None


class _Rule:
    __slots__ = ("roles", "sources", "target")

    def __init__(self, roles, sources, target):
        self.roles = frozenset(roles)
        self.sources = frozenset(sources)
        self.target = target


RULES: dict[Action, _Rule] = {
    Action.REDEEM_INVITE: _Rule({Role.SELLER}, {S.PENDING_PAYMENT}, S.SELLER_JOINED),
    Action.SUBMIT_PAYMENT: _Rule({Role.BUYER}, {S.SELLER_JOINED}, S.HELD),
    Action.MARK_DELIVERED: _Rule({Role.SELLER}, FUNDED_WAITING, S.PENDING_CONFIRMATION),
    Action.CONFIRM_RECEIPT: _Rule({Role.BUYER}, {S.PENDING_CONFIRMATION}, S.PENDING_RELEASE),
    Action.RELEASE_FUNDS: _Rule({Role.ADMIN}, {S.PENDING_RELEASE}, S.RELEASED),
    Action.REQUEST_REFUND: _Rule(
        {Role.BUYER}, FUNDED_WAITING | {S.PENDING_CONFIRMATION}, S.REFUND_REQUESTED
    ),
    Action.APPROVE_REFUND: _Rule({Role.ADMIN}, {S.REFUND_REQUESTED}, S.CANCELLED),
    Action.DENY_REFUND: _Rule({Role.ADMIN}, {S.REFUND_REQUESTED}, S.HELD),
    Action.FILE_DISPUTE: _Rule({Role.BUYER, Role.SELLER}, NON_TERMINAL, S.DISPUTED),
    Action.MARK_DISPUTED: _Rule({Role.ADMIN}, NON_TERMINAL, S.DISPUTED),
    Action.MOVE_TO_DELIVERY: _Rule({Role.ADMIN}, {S.HELD}, S.PENDING_DELIVERY),
    Action.DELETE: _Rule({Role.BUYER}, {S.PENDING_PAYMENT, S.SELLER_JOINED}, DELETED),
    Action.EXPIRE: _Rule({Role.SYSTEM, Role.ADMIN}, {S.PENDING_PAYMENT}, S.EXPIRED),
}


def transition(
    current: S,
    action: Action,
    role: Role,
    *,
    override_target: S | None = None,
) -> S | None:
    """
    Decide the next status for `action` taken by `role` from `current`.

    Returns the new status (None for DELETE). Raises InvalidTransition when the
    role may not take the action or `current` is not a legal predecessor.
    MANUAL_OVERRIDE is admin-only and accepts any `override_target`.
    """
    current = S(current)
    action = Action(action)
    role = Role(role)

    if action == Action.MANUAL_OVERRIDE:
        if role != Role.ADMIN:
            raise InvalidTransition("manual override requires admin", code="ROLE_NOT_ALLOWED")
        if override_target is None:
            raise InvalidTransition("manual override requires a target status", code="TARGET_REQUIRED")
        return S(override_target)

    rule = RULES.get(action)
    if rule is None:
        raise InvalidTransition(f"unknown action {action}")
    if role not in rule.roles:
        raise InvalidTransition(
            f"{role.value} may not {action.value}",
            code="ROLE_NOT_ALLOWED",
        )
    if current not in rule.sources:
        raise InvalidTransition(
            f"Illegal transaction transition: {current.value} -({action.value})->",
            code="ILLEGAL_TRANSITION",
        )
    return rule.target


def is_allowed(current: S, action: Action, role: Role) -> bool:
    try:
        transition(current, action, role, override_target=current)
    except InvalidTransition:
        return False
    return True


def allowed_actions(current: S, role: Role) -> list[Action]:
    actions = [a for a in RULES if is_allowed(current, a, role)]
    if Role(role) == Role.ADMIN:
        actions.append(Action.MANUAL_OVERRIDE)
    return actions
