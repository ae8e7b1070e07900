"""Approval configuration models (consumed, not owned, by the ledger workflow)."""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_engine.models.base import Base, TimestampMixin


class ApprovalSetting(Base, TimestampMixin):
    """A named, ordered chain of approval levels."""

    __tablename__ = "approval_setting"

    approval_setting_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)


class ApprovalLevel(Base):
    __tablename__ = "approval_level"

    approval_level_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    approval_setting_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_setting.approval_setting_id", ondelete="CASCADE"),
        nullable=False,
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("approval_setting_id", "level", name="approval_level_unique"),
    )


class ApprovalUser(Base):
    """Identity eligible to sign off at one approval level."""

    __tablename__ = "approval_user"

    approval_user_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    approval_level_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_level.approval_level_id", ondelete="CASCADE"),
        nullable=False,
    )
    approver_id: Mapped[UUID] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("approval_level_id", "approver_id", name="approval_user_unique"),
    )
