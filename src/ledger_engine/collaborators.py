"""Interfaces of the services the ledger core delegates to.

The core builds payloads and records results; it never delivers email,
renders documents or touches file storage itself.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from ledger_engine.schemas import NotificationPayload


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Delivers a fully built notification (email, in-app, ...)."""

    async def send(self, payload: NotificationPayload) -> None: ...


@runtime_checkable
class DocumentRenderer(Protocol):
    """Renders a normalized ledger-display object, returns the artifact URL."""

    async def render(self, ledger_view: dict[str, Any]) -> str: ...


@runtime_checkable
class FileStorage(Protocol):
    """Moves an uploaded temporary document to permanent per-entity storage."""

    async def move_to_permanent(self, document_id: str, entity: str, entity_id: UUID) -> str: ...
