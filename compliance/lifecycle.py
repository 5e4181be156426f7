from typing import Dict, FrozenSet

from .errors import PolicyViolation
from .models import ApplicationStatus

S = ApplicationStatus

TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    S.PENDING: frozenset({S.IN_PROGRESS, S.REJECTED}),
    S.IN_PROGRESS: frozenset({S.APPROVED, S.UNDER_REVIEW, S.REJECTED}),
    S.UNDER_REVIEW: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset(),
    S.REJECTED: frozenset(),
}

ALLOWED_ACTIONS: Dict[ApplicationStatus, FrozenSet[str]] = {
    S.PENDING: frozenset({"update", "upload_document", "delete_document", "submit", "delete", "reject"}),
    S.IN_PROGRESS: frozenset({"record_verification", "review_screening", "review_document", "reject"}),
    S.UNDER_REVIEW: frozenset({"record_verification", "review_screening", "approve", "reject",
                               "review_document"}),
    S.APPROVED: frozenset(),
    S.REJECTED: frozenset(),
}


def can_transition(current: ApplicationStatus, target: ApplicationStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: ApplicationStatus, target: ApplicationStatus) -> None:
    if not can_transition(current, target):
        raise PolicyViolation(
            f"Cannot move application from {current.value} to {target.value}",
            code="INVALID_TRANSITION",
            details={"from": current.value, "to": target.value},
        )


def is_action_allowed(status: ApplicationStatus, action: str) -> bool:
    return action in ALLOWED_ACTIONS[status]


def ensure_action(status: ApplicationStatus, action: str) -> None:
    if not is_action_allowed(status, action):
        raise PolicyViolation(
            f"Action {action!r} is not permitted while the application is {status.value}",
            code="ACTION_NOT_ALLOWED",
            details={"status": status.value, "action": action},
        )
