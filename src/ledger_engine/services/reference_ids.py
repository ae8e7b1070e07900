"""Human-readable reference id generation (``INV-12``, ``BILL-3``)."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.exceptions import NotFoundError, StateConflictError
from ledger_engine.models import Ledger, Prefix

logger = logging.getLogger(__name__)


class ReferenceIdGenerator:
    """Generates ``prefix_name + separator + (count + number)``.

    ``count`` is the number of existing ledgers of the same type; on a
    collision the counter is bumped and the next candidate tried.
    """

    def __init__(self, session: AsyncSession, max_attempts: int = 50):
        self.session = session
        self.max_attempts = max_attempts

    async def get_prefix(self, slug: str) -> Prefix:
        result = await self.session.execute(select(Prefix).where(Prefix.slug == slug))
        prefix = result.scalar_one_or_none()
        if prefix is None:
            raise NotFoundError("Prefix", slug)
        return prefix

    async def _exists(self, reference_id: str) -> bool:
        result = await self.session.execute(
            select(Ledger.ledger_id).where(Ledger.reference_id == reference_id)
        )
        return result.first() is not None

    async def generate(self, ledger_type: str, slug: str | None = None) -> str:
        """Return an unused reference id for a new ledger of ``ledger_type``.

        Raises:
            NotFoundError: If the prefix slug is not configured
            StateConflictError: If no free id was found within max_attempts
        """
        prefix = await self.get_prefix(slug or ledger_type)
        count_result = await self.session.execute(
            select(func.count()).select_from(Ledger).where(Ledger.ledger_type == ledger_type)
        )
        count = int(count_result.scalar_one())

        for _ in range(self.max_attempts):
            candidate = f"{prefix.prefix_name}{prefix.separator}{count + prefix.number}"
            if not await self._exists(candidate):
                return candidate
            logger.debug("Reference id %s taken, trying next", candidate)
            count += 1

        raise StateConflictError(
            f"No free reference id for prefix '{prefix.slug}' after {self.max_attempts} attempts",
            slug=prefix.slug,
        )
