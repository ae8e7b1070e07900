"""Domain events, emitter and transactional outbox.

Usage:
    from ledger_engine.events import AsyncEventEmitter, OutboxDispatcher
    from ledger_engine.events.handlers import register_default_handlers

    emitter = register_default_handlers(AsyncEventEmitter(), session_factory)
    await OutboxDispatcher(session_factory, emitter).drain()
"""

from ledger_engine.events.emitter import AsyncEventEmitter, HandlerRegistration
from ledger_engine.events.outbox import DrainResult, OutboxDispatcher, OutboxRecord, OutboxStore
from ledger_engine.events.types import (
    ApprovalRequested,
    DomainEvent,
    EventCategory,
    EventMetadata,
    LedgerApproved,
    LedgerCreated,
    LedgerLineItemRemoved,
    LedgerRejected,
    LedgerStatusChanged,
    LedgerUpdated,
)

__all__ = [
    # Types
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    # Ledger events
    "LedgerCreated",
    "LedgerUpdated",
    "LedgerLineItemRemoved",
    # Approval events
    "LedgerStatusChanged",
    "ApprovalRequested",
    "LedgerApproved",
    "LedgerRejected",
    # Emitter
    "AsyncEventEmitter",
    "HandlerRegistration",
    # Outbox
    "DrainResult",
    "OutboxDispatcher",
    "OutboxRecord",
    "OutboxStore",
]
