"""Domain event types for ledger operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for the outbox

Events are written to the outbox in the same transaction as the financial
change that raised them and fanned out to handlers after commit.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    LEDGER = "ledger"
    APPROVAL = "approval"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    actor_id: UUID | None  # User or system that triggered
    actor_type: str  # 'user', 'system'
    source_service: str  # Service that emitted
    version: int = 1  # Schema version for evolution

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        actor_id: UUID | None = None,
        actor_type: str = "user",
        source_service: str = "ledger",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type if actor_id else "system",
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        return to_jsonable(asdict(self))


def to_jsonable(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: to_jsonable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, date):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Ledger Events
# =============================================================================


@dataclass(frozen=True)
class LedgerCreated(DomainEvent):
    """A ledger was raised (submitted or saved as draft)."""

    ledger_id: UUID
    ledger_type: str
    reference_id: str
    status: str
    amount: Decimal
    snapshot: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> EventCategory:
        return EventCategory.LEDGER


@dataclass(frozen=True)
class LedgerUpdated(DomainEvent):
    """Header, line items or addresses of a ledger changed."""

    ledger_id: UUID
    ledger_type: str
    reference_id: str
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> EventCategory:
        return EventCategory.LEDGER


@dataclass(frozen=True)
class LedgerLineItemRemoved(DomainEvent):
    """A line item was soft-deleted and its hour entries released."""

    ledger_id: UUID
    line_item_id: int
    amount: Decimal
    released_hour_ids: tuple[int, ...] = ()
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> EventCategory:
        return EventCategory.LEDGER


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(frozen=True)
class LedgerStatusChanged(DomainEvent):
    """Ledger moved between workflow statuses."""

    ledger_id: UUID
    from_status: str
    to_status: str
    approval_level: int
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalRequested(DomainEvent):
    """Approvers of the current level must act on a ledger."""

    ledger_id: UUID
    ledger_type: str
    reference_id: str
    approval_level: int
    approver_ids: tuple[UUID, ...] = ()

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class LedgerApproved(DomainEvent):
    """The final configured level approved a ledger."""

    ledger_id: UUID
    ledger_type: str
    reference_id: str
    approval_level: int
    created_by: UUID | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class LedgerRejected(DomainEvent):
    """A current-level approver rejected a ledger."""

    ledger_id: UUID
    ledger_type: str
    reference_id: str
    approval_level: int
    reject_reason: str
    created_by: UUID | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL
