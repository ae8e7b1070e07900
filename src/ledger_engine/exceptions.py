"""Error taxonomy for ledger operations.

Every failure raised by the engine derives from :class:`LedgerEngineError`
and carries a stable ``code`` that the service boundary reports back in an
:class:`~ledger_engine.services.workflow.OperationResult`.
"""

from __future__ import annotations

from typing import Any


class LedgerEngineError(Exception):
    """Base class for all ledger engine errors."""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(LedgerEngineError):
    """Malformed or missing input, detected before a transaction opens."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message, errors=errors or [])
        self.errors = errors or []


class NotFoundError(LedgerEngineError):
    """A referenced placement, ledger, line item or rate period is missing."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: Any, message: str | None = None):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            message or f"{entity} {identifier} not found",
            entity=entity,
            identifier=identifier,
        )


class StateConflictError(LedgerEngineError):
    """Operation is not allowed in the ledger's current state."""

    code = "STATE_CONFLICT"


class PersistenceError(LedgerEngineError):
    """Transaction or commit failure.

    Always raised ``from`` the underlying database error so the cause is
    preserved on ``__cause__``.
    """

    code = "PERSISTENCE_ERROR"
