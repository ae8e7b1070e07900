"""Event emitter for fanning out committed domain events.

The emitter provides:
- Handler registration with type filtering
- Error isolation (handler failures don't break other handlers)

Handlers receive :class:`~ledger_engine.events.outbox.OutboxRecord` objects
drained from the outbox, never live ORM state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ledger_engine.events.types import DomainEvent

logger = logging.getLogger(__name__)


class Dispatchable(Protocol):
    """Anything routable by the emitter."""

    @property
    def event_type(self) -> str: ...


@runtime_checkable
class AsyncEventHandler(Protocol):
    """Protocol for asynchronous event handlers."""

    async def __call__(self, event: Any) -> None:
        """Handle a dispatched event asynchronously."""
        ...


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: AsyncEventHandler
    event_types: set[str] | None  # None = all events


class AsyncEventEmitter:
    """Asynchronous event emitter.

    Usage:
        emitter = AsyncEventEmitter()

        async def notify_approvers(event: OutboxRecord) -> None:
            ...

        emitter.on(ApprovalRequested, notify_approvers)
        errors = await emitter.emit(record)
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(
        self,
        event_type: type[DomainEvent] | list[type[DomainEvent]],
        handler: AsyncEventHandler,
    ) -> None:
        """Register async handler for specific event type(s)."""
        if isinstance(event_type, list):
            types = {t.__name__ for t in event_type}
        else:
            types = {event_type.__name__}

        self._handlers.append(HandlerRegistration(handler=handler, event_types=types))

    def on_all(self, handler: AsyncEventHandler) -> None:
        """Register async handler for all events."""
        self._handlers.append(HandlerRegistration(handler=handler, event_types=None))

    def off(self, handler: AsyncEventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    async def emit(self, event: Dispatchable) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        Handlers are isolated - failures don't stop other handlers.
        """
        event_type = event.event_type

        tasks: list[asyncio.Task[None]] = []
        for reg in self._handlers:
            if reg.event_types and event_type not in reg.event_types:
                continue
            tasks.append(asyncio.create_task(self._call_async_handler(reg.handler, event)))

        errors: list[Exception] = []
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    errors.append(result)
        return errors

    async def _call_async_handler(
        self,
        handler: AsyncEventHandler,
        event: Dispatchable,
    ) -> None:
        """Call async handler with error logging."""
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "Async handler %s failed for event %s",
                handler,
                event.event_type,
            )
            raise
