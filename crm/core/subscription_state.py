"""
Subscription status state machine.

    added ──► active ──► expired
      └──────────────────►┘

No regression to 'added' once a row has advanced. 'expired' is terminal in
practice but a paid renewal may move it back to 'active'. Same-state writes
are accepted as no-ops.

The same rule is enforced in PostgreSQL by trg_guard_status_transition
(migrations/002_ledger_guards.sql); the trigger raises check_violation with
constraint name STATUS_TRANSITION_CONSTRAINT.
"""
from enum import Enum
from typing import FrozenSet, Dict, Union

from crm.core.exceptions import IllegalStatusTransitionError

STATUS_TRANSITION_CONSTRAINT = "subscription_status_transition"


class SubscriptionStatus(str, Enum):
    ADDED = "added"
    ACTIVE = "active"
    EXPIRED = "expired"


ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.ADDED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED}),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.EXPIRED}),
    SubscriptionStatus.EXPIRED: frozenset({SubscriptionStatus.ACTIVE}),
}


def parse_status(value: Union[str, SubscriptionStatus]) -> SubscriptionStatus:
    """
    Normalize a status value.

    Raises:
        ValueError: unknown status
    """
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown subscription status: {value!r}") from None


def is_transition_allowed(old: Union[str, SubscriptionStatus], new: Union[str, SubscriptionStatus]) -> bool:
    old_status = parse_status(old)
    new_status = parse_status(new)
    if old_status == new_status:
        return True
    return new_status in ALLOWED_TRANSITIONS[old_status]


def ensure_transition_allowed(old: Union[str, SubscriptionStatus], new: Union[str, SubscriptionStatus]) -> SubscriptionStatus:
    """
    Validate a status change before it is written.

    Returns:
        The parsed target status

    Raises:
        IllegalStatusTransitionError: active->added or expired->added
        ValueError: unknown status value
    """
    new_status = parse_status(new)
    if not is_transition_allowed(old, new_status):
        raise IllegalStatusTransitionError(parse_status(old).value, new_status.value)
    return new_status
