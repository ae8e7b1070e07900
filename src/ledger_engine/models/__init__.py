"""ORM models."""

from ledger_engine.models.approval import ApprovalLevel, ApprovalSetting, ApprovalUser
from ledger_engine.models.base import Base, TimestampMixin
from ledger_engine.models.company import BillingRatePeriod, Company, Employee, Placement
from ledger_engine.models.immutability import (
    ImmutableRecordError,
    register_immutability_listeners,
)
from ledger_engine.models.ledger import (
    ActivityAction,
    AddressType,
    Ledger,
    LedgerActivityTrack,
    LedgerAddress,
    LedgerApprovalTrack,
    LedgerFieldChange,
    LedgerLineItem,
    LedgerType,
)
from ledger_engine.models.reference import OutboxEvent, Prefix
from ledger_engine.models.timesheet import TIMESHEET_APPROVED, Timesheet, TimesheetHourEntry

register_immutability_listeners()

__all__ = [
    "ActivityAction",
    "AddressType",
    "ApprovalLevel",
    "ApprovalSetting",
    "ApprovalUser",
    "Base",
    "BillingRatePeriod",
    "Company",
    "Employee",
    "ImmutableRecordError",
    "Ledger",
    "LedgerActivityTrack",
    "LedgerAddress",
    "LedgerApprovalTrack",
    "LedgerFieldChange",
    "LedgerLineItem",
    "LedgerType",
    "OutboxEvent",
    "Placement",
    "Prefix",
    "TIMESHEET_APPROVED",
    "TimestampMixin",
    "Timesheet",
    "TimesheetHourEntry",
]
