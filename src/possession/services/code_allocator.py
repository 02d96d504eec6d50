"""Possession code allocation.

Codes look like ``POS-20250101-007``: prefix, UTC calendar day, and a
per-day sequence number zero-padded to three digits.

The sequence lives in ``possession_code_counters`` and is advanced with one
atomic ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` statement, so any
number of concurrent callers each receive a distinct value. The increment
runs in the caller's transaction: if the surrounding creation rolls back,
the number is released with it and no gap appears.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite

from possession.db.models.base import utcnow
from possession.db.models.possessions import PossessionCodeCounter
from possession.services.errors import CodeAllocationExhaustedError
from possession.services.store import PossessionStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "POS"
DEFAULT_MAX_ATTEMPTS = 5
SEQUENCE_WIDTH = 3


def day_prefix(prefix: str, when: datetime) -> str:
    """Counter key for the given day, e.g. ``POS-20250101``."""
    return f"{prefix}-{when:%Y%m%d}"


def format_code(day_key: str, sequence: int) -> str:
    return f"{day_key}-{sequence:0{SEQUENCE_WIDTH}d}"


def parse_sequence(code: str) -> int | None:
    """Sequence number of a code, or None if the suffix is not numeric."""
    suffix = code.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else None


class CodeAllocator:
    """Hands out unique, gap-free possession codes.

    Args:
        session: Session whose transaction the counter increment joins.
        prefix: Code prefix (defaults to POS).
        max_attempts: Fresh allocations tried before giving up when a
            counter value collides with an existing code.
        clock: Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        prefix: str = DEFAULT_PREFIX,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._store = PossessionStore(session)
        self.prefix = prefix
        self.max_attempts = max_attempts
        self._clock = clock

    async def allocate(self) -> str:
        """Allocate the next code for today.

        Returns:
            A code not used by any existing record.

        Raises:
            CodeAllocationExhaustedError: Every attempt collided with an existing code.
        """
        day_key = day_prefix(self.prefix, self._clock())

        for attempt in range(1, self.max_attempts + 1):
            sequence = await self._next_sequence(day_key)
            code = format_code(day_key, sequence)
            if not await self._store.code_exists(code):
                logger.debug("Allocated possession code %s (attempt %d)", code, attempt)
                return code
            logger.warning(
                "Allocated code already in use, retrying",
                extra={"code": code, "attempt": attempt},
            )

        logger.error(
            "Possession code allocation exhausted",
            extra={"day_key": day_key, "attempts": self.max_attempts},
        )
        raise CodeAllocationExhaustedError(day_key, self.max_attempts)

    async def _next_sequence(self, day_key: str) -> int:
        # The seed only applies when this call creates the counter row; a
        # concurrent creator loses the insert and takes the increment branch.
        seed = await self._seed_for(day_key)
        table = PossessionCodeCounter.__table__
        now = self._clock()

        insert = postgresql.insert if self._dialect_name() == "postgresql" else sqlite.insert
        stmt = insert(table).values(prefix=day_key, last_value=seed + 1, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.prefix],
            set_={"last_value": table.c.last_value + 1, "updated_at": now},
        ).returning(table.c.last_value)

        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def _seed_for(self, day_key: str) -> int:
        """Highest sequence already used for the day when no counter row exists yet."""
        result = await self._session.execute(
            select(PossessionCodeCounter.last_value).where(PossessionCodeCounter.prefix == day_key)
        )
        if result.scalar_one_or_none() is not None:
            return 0
        sequences = [
            seq
            for seq in map(parse_sequence, await self._store.codes_with_prefix(day_key))
            if seq is not None
        ]
        return max(sequences, default=0)

    def _dialect_name(self) -> str:
        return self._session.get_bind().dialect.name
