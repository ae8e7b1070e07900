"""Ledger services."""

from ledger_engine.services.approval_service import ApprovalService, IneligibleApproverError
from ledger_engine.services.ledger_service import HourEntryConflictError, LedgerService
from ledger_engine.services.reference_ids import ReferenceIdGenerator
from ledger_engine.services.state_machine import (
    ApprovalAction,
    InvalidTransitionError,
    LedgerStateMachine,
    LedgerStatus,
)
from ledger_engine.services.workflow import (
    LedgerWorkflow,
    OperationResult,
    OperationStatus,
    parse_payload,
)

__all__ = [
    "ApprovalAction",
    "ApprovalService",
    "HourEntryConflictError",
    "IneligibleApproverError",
    "InvalidTransitionError",
    "LedgerService",
    "LedgerStateMachine",
    "LedgerStatus",
    "LedgerWorkflow",
    "OperationResult",
    "OperationStatus",
    "ReferenceIdGenerator",
    "parse_payload",
]
