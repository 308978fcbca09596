"""
Canonical violation and contest transition tables.

Every mutation path goes through ``advance_violation`` / ``advance_contest``;
nothing infers a next status on its own.
"""
from typing import Dict, FrozenSet, Tuple

from parkwatch.core.constants import (
    ContestStatus,
    ReviewAction,
    ViolationStatus,
    ViolationTrigger,
)
from parkwatch.core.errors import InvalidActionError, StateConflictError

VIOLATION_TRANSITIONS: Dict[Tuple[ViolationStatus, ViolationTrigger], ViolationStatus] = {
    (ViolationStatus.PENDING, ViolationTrigger.APPEAL_SUBMITTED): ViolationStatus.CONTESTED,
    (ViolationStatus.CONTESTED, ViolationTrigger.APPEAL_UNDER_REVIEW): ViolationStatus.CONTESTED,
    (ViolationStatus.CONTESTED, ViolationTrigger.APPEAL_APPROVED): ViolationStatus.RESOLVED,
    (ViolationStatus.CONTESTED, ViolationTrigger.APPEAL_DENIED): ViolationStatus.CLOSED,
    (ViolationStatus.PENDING, ViolationTrigger.ADMIN_REJECTED): ViolationStatus.REJECTED,
    (ViolationStatus.PENDING, ViolationTrigger.AUTO_CLOSED): ViolationStatus.CLOSED,
}

CONTEST_TRANSITIONS: Dict[ContestStatus, FrozenSet[ContestStatus]] = {
    ContestStatus.PENDING: frozenset(
        {ContestStatus.UNDER_REVIEW, ContestStatus.APPROVED, ContestStatus.DENIED}
    ),
    ContestStatus.UNDER_REVIEW: frozenset(
        {ContestStatus.UNDER_REVIEW, ContestStatus.APPROVED, ContestStatus.DENIED}
    ),
    ContestStatus.APPROVED: frozenset(),
    ContestStatus.DENIED: frozenset(),
}

_ACTION_OUTCOMES: Dict[ReviewAction, Tuple[ContestStatus, ViolationTrigger]] = {
    ReviewAction.APPROVE: (ContestStatus.APPROVED, ViolationTrigger.APPEAL_APPROVED),
    ReviewAction.DENY: (ContestStatus.DENIED, ViolationTrigger.APPEAL_DENIED),
    ReviewAction.UNDER_REVIEW: (ContestStatus.UNDER_REVIEW, ViolationTrigger.APPEAL_UNDER_REVIEW),
}


def can_advance_violation(current: ViolationStatus, trigger: ViolationTrigger) -> bool:
    return (current, trigger) in VIOLATION_TRANSITIONS


def advance_violation(current: ViolationStatus, trigger: ViolationTrigger) -> ViolationStatus:
    try:
        return VIOLATION_TRANSITIONS[(current, trigger)]
    except KeyError:
        raise StateConflictError(
            f"Violation in '{current.value}' cannot take '{trigger.value}'",
            status=current.value,
            trigger=trigger.value,
        )


def parse_action(action) -> ReviewAction:
    if isinstance(action, ReviewAction):
        return action
    try:
        return ReviewAction(action)
    except ValueError:
        raise InvalidActionError(
            f"Invalid action '{action}'. Valid actions are: approve, deny, under_review",
            action=str(action),
        )


def advance_contest(current: ContestStatus, action) -> Tuple[ContestStatus, ViolationTrigger]:
    """Resolve a review action against the contest table.

    Returns the new contest status and the trigger to feed the violation table.
    """
    action = parse_action(action)
    target, trigger = _ACTION_OUTCOMES[action]
    if target not in CONTEST_TRANSITIONS[current]:
        raise StateConflictError(
            f"Contest is already {current.value}; the decision is final",
            contest_status=current.value,
        )
    return target, trigger
