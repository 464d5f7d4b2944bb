"""
Payout State Machines

This module is the SINGLE SOURCE OF TRUTH for commission, withdrawal and
payout batch status transitions. All status changes go through
``transition()``.

Commission:   pending -> {available, rejected};  available -> paid
Withdrawal:   PENDING -> {APPROVED, REJECTED};  APPROVED -> {PROCESSING, REJECTED}
              PROCESSING -> {PAID, FAILED, APPROVED*};  FAILED -> PROCESSING
              (* only when detached from a batch that was never submitted)
Batch:        DRAFT -> READY;  READY -> {DRAFT, PROCESSING}
              PROCESSING -> {COMPLETED, PARTIALLY_COMPLETED, FAILED}
              PARTIALLY_COMPLETED -> PROCESSING (reprocess)
"""

from enum import Enum
from typing import Dict, List, Type

from affiliate_payouts.core.exceptions import StateConflictError


# =============================================================================
# STATUS DEFINITIONS
# =============================================================================

class CommissionStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    REJECTED = "rejected"
    PAID = "paid"


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"


class BatchStatus(str, Enum):
    DRAFT = "DRAFT"
    READY = "READY"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIALLY_COMPLETED = "PARTIALLY_COMPLETED"
    FAILED = "FAILED"


class BatchItemStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# Withdrawal amounts in these states are reserved against the balance
RESERVED_WITHDRAWAL_STATUSES = [
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.APPROVED.value,
    WithdrawalStatus.PROCESSING.value,
]

# Requests that count as "open" for duplicate-submission detection
OPEN_WITHDRAWAL_STATUSES = [
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.APPROVED.value,
]


# =============================================================================
# TRANSITION RULES
# =============================================================================

COMMISSION_TRANSITIONS: Dict[str, List[str]] = {
    CommissionStatus.PENDING: [CommissionStatus.AVAILABLE, CommissionStatus.REJECTED],
    CommissionStatus.AVAILABLE: [CommissionStatus.PAID],
    CommissionStatus.REJECTED: [],  # Terminal
    CommissionStatus.PAID: [],      # Terminal
}

WITHDRAWAL_TRANSITIONS: Dict[str, List[str]] = {
    WithdrawalStatus.PENDING: [WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED],
    WithdrawalStatus.APPROVED: [WithdrawalStatus.PROCESSING, WithdrawalStatus.REJECTED],
    WithdrawalStatus.PROCESSING: [
        WithdrawalStatus.PAID,
        WithdrawalStatus.FAILED,
        WithdrawalStatus.APPROVED,  # Detached from an unsubmitted batch
    ],
    WithdrawalStatus.FAILED: [WithdrawalStatus.PROCESSING],  # Re-batch / reprocess
    WithdrawalStatus.REJECTED: [],  # Terminal
    WithdrawalStatus.PAID: [],      # Terminal
}

BATCH_TRANSITIONS: Dict[str, List[str]] = {
    BatchStatus.DRAFT: [BatchStatus.READY],
    BatchStatus.READY: [BatchStatus.DRAFT, BatchStatus.PROCESSING],
    BatchStatus.PROCESSING: [
        BatchStatus.COMPLETED,
        BatchStatus.PARTIALLY_COMPLETED,
        BatchStatus.FAILED,
    ],
    BatchStatus.PARTIALLY_COMPLETED: [BatchStatus.PROCESSING],
    BatchStatus.COMPLETED: [],  # Terminal
    BatchStatus.FAILED: [],     # Terminal, withdrawals are re-batched instead
}

_MACHINES: Dict[Type[Enum], Dict[str, List[str]]] = {
    CommissionStatus: COMMISSION_TRANSITIONS,
    WithdrawalStatus: WITHDRAWAL_TRANSITIONS,
    BatchStatus: BATCH_TRANSITIONS,
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(status_type: Type[Enum], current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    allowed = _MACHINES[status_type].get(status_type(current_status), [])
    return status_type(new_status) in allowed


def get_allowed_transitions(status_type: Type[Enum], current_status: str) -> List[str]:
    return [s.value for s in _MACHINES[status_type].get(status_type(current_status), [])]


def is_terminal(status_type: Type[Enum], status: str) -> bool:
    return not _MACHINES[status_type].get(status_type(status))


def validate_transition(status_type: Type[Enum], current_status: str, new_status: str, label: str) -> None:
    """
    Validate a status transition. Raises StateConflictError if invalid.

    Unlike a generic workflow, a same-status "transition" is never a no-op
    here: approving an already-approved entity is a conflict.
    """
    if can_transition(status_type, current_status, new_status):
        return

    allowed = get_allowed_transitions(status_type, current_status)
    if not allowed:
        raise StateConflictError(
            f"{label} in '{current_status}' status cannot be modified. This is a terminal state.",
            {"current_status": current_status, "requested_status": new_status},
        )
    raise StateConflictError(
        f"Cannot change {label} from '{current_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        {"current_status": current_status, "requested_status": new_status, "allowed": allowed},
    )


def transition(entity, status_type: Type[Enum], new_status: Enum, label: str) -> str:
    """
    Move ``entity.status`` to ``new_status`` after validating the rule table.

    Returns the previous status so callers can record it in the audit trail.
    """
    previous = entity.status
    validate_transition(status_type, previous, new_status.value, label)
    entity.status = new_status.value
    return previous
