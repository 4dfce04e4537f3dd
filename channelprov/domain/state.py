from __future__ import annotations

from enum import Enum

from channelprov.core.errors import InvalidTransitionError


class ProvisioningStatus(str, Enum):
    PENDING = "pending"
    OAUTH_COMPLETED = "oauth_completed"
    ACCOUNT_DETECTED = "account_detected"
    AWAITING_MANUAL_CREATION = "awaiting_manual_creation"
    AWAITING_NUMBER_VERIFICATION = "awaiting_number_verification"
    COMPLETED = "completed"
    FAILED = "failed"


S = ProvisioningStatus

# Forward edges plus the step back when a tenant is re-linked to another account;
# self-transitions and the move to FAILED are always allowed.
ALLOWED_TRANSITIONS: dict[ProvisioningStatus, frozenset[ProvisioningStatus]] = {
    S.PENDING: frozenset({S.OAUTH_COMPLETED}),
    S.OAUTH_COMPLETED: frozenset({S.ACCOUNT_DETECTED, S.AWAITING_MANUAL_CREATION}),
    S.ACCOUNT_DETECTED: frozenset({S.AWAITING_NUMBER_VERIFICATION}),
    S.AWAITING_MANUAL_CREATION: frozenset({S.ACCOUNT_DETECTED, S.OAUTH_COMPLETED}),
    S.AWAITING_NUMBER_VERIFICATION: frozenset({S.COMPLETED, S.ACCOUNT_DETECTED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset({S.OAUTH_COMPLETED}),
}


def can_transition(current: ProvisioningStatus | str | None, target: ProvisioningStatus | str) -> bool:
    target_status = ProvisioningStatus(target)
    if current is None:
        # First write creates the record in either the initial or the post-OAuth state.
        return target_status in {S.PENDING, S.OAUTH_COMPLETED, S.FAILED}
    current_status = ProvisioningStatus(current)
    if current_status == target_status or target_status == S.FAILED:
        return True
    return target_status in ALLOWED_TRANSITIONS[current_status]


def ensure_transition(current: ProvisioningStatus | str | None, target: ProvisioningStatus | str) -> ProvisioningStatus:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"cannot move provisioning status from {current} to {target}")
    return ProvisioningStatus(target)


def is_terminal(status: ProvisioningStatus | str | None) -> bool:
    return status is not None and ProvisioningStatus(status) == S.COMPLETED
