"""ORM-level append-only enforcement for audit rows.

Approval track, activity track and field-change rows are written once and
never modified. Listeners fire before the SQL reaches the database, so a
violating flush aborts the surrounding transaction.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import event

from ledger_engine.exceptions import StateConflictError
from ledger_engine.models.ledger import (
    LedgerActivityTrack,
    LedgerApprovalTrack,
    LedgerFieldChange,
)

APPEND_ONLY_MODELS = (LedgerApprovalTrack, LedgerActivityTrack, LedgerFieldChange)


class ImmutableRecordError(StateConflictError):
    """Raised when an append-only audit row is updated or deleted."""

    code = "IMMUTABLE_RECORD"


def _reject_update(mapper: Any, connection: Any, target: Any) -> None:
    raise ImmutableRecordError(f"{type(target).__name__} rows are append-only")


def _reject_delete(mapper: Any, connection: Any, target: Any) -> None:
    raise ImmutableRecordError(f"{type(target).__name__} rows cannot be deleted")


def register_immutability_listeners() -> None:
    """Install listeners once per process."""
    for model in APPEND_ONLY_MODELS:
        if not event.contains(model, "before_update", _reject_update):
            event.listen(model, "before_update", _reject_update)
        if not event.contains(model, "before_delete", _reject_delete):
            event.listen(model, "before_delete", _reject_delete)
