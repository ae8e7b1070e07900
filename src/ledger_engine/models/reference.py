"""Reference-id prefixes and the domain event outbox."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledger_engine.models.base import Base, JSONType, TimestampMixin


class Prefix(Base):
    """Reference-id prefix: ``prefix_name + separator + (count + number)``."""

    __tablename__ = "prefix"

    prefix_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    prefix_name: Mapped[str] = mapped_column(String(10), nullable=False)
    separator: Mapped[str] = mapped_column(String(3), nullable=False, default="-")
    number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class OutboxEvent(Base, TimestampMixin):
    """Domain event committed together with the financial mutation that raised it."""

    __tablename__ = "ledger_outbox"

    # Append order; drained oldest first
    outbox_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    correlation_id: Mapped[UUID] = mapped_column(nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
