"""Ledger approval state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from ledger_engine.exceptions import StateConflictError


class LedgerStatus(str, Enum):
    """Ledger status values."""

    DRAFTED = "Drafted"
    SUBMITTED = "Submitted"
    APPROVAL_IN_PROGRESS = "Approval In Progress"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PARTIALLY_APPROVED = "Partially Approved"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"


class ApprovalAction(str, Enum):
    """Actions written to the approval track."""

    SUBMIT = "submit"
    REQUEST = "request"
    APPROVE = "approve"
    REJECT = "reject"
    PAYMENT = "payment"


class InvalidTransitionError(StateConflictError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, from_status=from_status, to_status=to_status)


class LedgerStateMachine:
    """State machine for ledger status transitions.

    Allowed transitions:
    - Drafted → Submitted (finalize)
    - Submitted → Approval In Progress (multi-level flow starts)
    - Submitted → Approved (single-level flow, final approver)
    - Approval In Progress → Approval In Progress (level N → N+1)
    - Approval In Progress → Approved (max level approver)
    - Submitted / Approval In Progress → Rejected
    - Approved → Partially Paid / Paid (payment recording)
    - Partially Paid → Partially Paid / Paid
    - Rejected, Paid: terminal

    Partially Approved is accepted in stored data but never produced here.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        LedgerStatus.DRAFTED: [LedgerStatus.SUBMITTED],
        LedgerStatus.SUBMITTED: [
            LedgerStatus.APPROVAL_IN_PROGRESS,
            LedgerStatus.APPROVED,
            LedgerStatus.REJECTED,
        ],
        LedgerStatus.APPROVAL_IN_PROGRESS: [
            LedgerStatus.APPROVAL_IN_PROGRESS,
            LedgerStatus.APPROVED,
            LedgerStatus.REJECTED,
        ],
        LedgerStatus.APPROVED: [LedgerStatus.PARTIALLY_PAID, LedgerStatus.PAID],
        LedgerStatus.PARTIALLY_PAID: [LedgerStatus.PARTIALLY_PAID, LedgerStatus.PAID],
        LedgerStatus.PARTIALLY_APPROVED: [],
        LedgerStatus.REJECTED: [],  # Terminal state
        LedgerStatus.PAID: [],  # Terminal state
    }

    TERMINAL = {LedgerStatus.REJECTED, LedgerStatus.PAID}

    # Statuses where an approver may act
    AWAITING_APPROVAL = {
        LedgerStatus.SUBMITTED,
        LedgerStatus.APPROVAL_IN_PROGRESS,
    }

    # Statuses where header and line items can be modified
    LINES_MUTABLE = {
        LedgerStatus.DRAFTED,
        LedgerStatus.SUBMITTED,
        LedgerStatus.APPROVAL_IN_PROGRESS,
        LedgerStatus.APPROVED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if cls.is_terminal(from_status):
            raise InvalidTransitionError(from_status, to_status, "ledger is in a terminal state")
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def is_awaiting_approval(cls, status: str) -> bool:
        """Check if an approver action is expected in this status."""
        return status in cls.AWAITING_APPROVAL

    @classmethod
    def can_modify_lines(cls, status: str) -> bool:
        """Check if header fields and line items can be modified."""
        return status in cls.LINES_MUTABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def initial_status(cls, save_as_draft: bool) -> LedgerStatus:
        return LedgerStatus.DRAFTED if save_as_draft else LedgerStatus.SUBMITTED

    @classmethod
    def approval_target(cls, current_level: int, max_level: int) -> tuple[LedgerStatus, int]:
        """Status and level after the current-level approver signs off.

        The final configured level approves the ledger; any lower level
        advances exactly one level.
        """
        if current_level >= max_level:
            return LedgerStatus.APPROVED, current_level
        return LedgerStatus.APPROVAL_IN_PROGRESS, current_level + 1
