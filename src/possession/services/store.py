"""Persistence adapter for possession records.

Wraps an AsyncSession with the queries the lifecycle and reporting services
need. The store never commits; the caller owns the transaction.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from possession.db.models.base import PossessionStatus, utcnow
from possession.db.models.possessions import Possession
from possession.services.errors import (
    ConflictingConcurrentUpdateError,
    DuplicateActivePossessionError,
    PossessionNotFoundError,
)
from possession.services.transitions import ACTIVE_STATUSES, STATUS_ORDER

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = {
    "init_date": Possession.init_date,
    "created_at": Possession.created_at,
    "updated_at": Possession.updated_at,
    "possession_code": Possession.possession_code,
    "status": Possession.status,
    "handover_date": Possession.handover_date,
}

MAX_PAGE_SIZE = 100

SECONDS_PER_DAY = 86400


def duration_days(record: Possession) -> int | None:
    """Days from initiation to handover, rounded up; None until handed over."""
    if record.handover_date is None:
        return None
    delta = record.handover_date - record.init_date
    return math.ceil(abs(delta.total_seconds()) / SECONDS_PER_DAY)


def age_days(record: Possession, now: datetime | None = None) -> int:
    """Days since initiation, rounded up."""
    delta = (now or utcnow()) - record.init_date
    return max(0, math.ceil(delta.total_seconds() / SECONDS_PER_DAY))


@dataclass(slots=True)
class PossessionFilters:
    """Criteria for listing possession records.

    Attributes:
        plot_id: Exact plot reference.
        file_id: Exact file reference.
        statuses: Any of these statuses.
        letter_collected: Letter collection flag.
        handover_officer_id: Exact officer reference.
        start_date: Inclusive lower bound on init_date.
        end_date: Inclusive upper bound on init_date.
        min_duration: Minimum handover duration in days.
        max_duration: Maximum handover duration in days.
        search: Case-insensitive text matched against code, collector and remarks.
    """

    plot_id: str | None = None
    file_id: str | None = None
    statuses: list[PossessionStatus] = field(default_factory=list)
    letter_collected: bool | None = None
    handover_officer_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_duration: int | None = None
    max_duration: int | None = None
    search: str | None = None


@dataclass(frozen=True, slots=True)
class PageSummary:
    """Aggregates over the records of one page."""

    total_on_page: int
    by_status: dict[str, int]
    collected: int
    pending: int
    average_duration_days: float | None


@dataclass(frozen=True, slots=True)
class PossessionPage:
    """One page of a filtered listing."""

    items: list[Possession]
    total: int
    page: int
    limit: int
    summary: PageSummary

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def summarize(records: list[Possession]) -> PageSummary:
    by_status = {s.value: 0 for s in STATUS_ORDER}
    durations = []
    collected = 0
    pending = 0
    for record in records:
        by_status[record.status.value] += 1
        if record.status in ACTIVE_STATUSES:
            pending += 1
        if record.letter_collected:
            collected += 1
        days = duration_days(record)
        if days is not None:
            durations.append(days)
    return PageSummary(
        total_on_page=len(records),
        by_status=by_status,
        collected=collected,
        pending=pending,
        average_duration_days=(sum(durations) / len(durations)) if durations else None,
    )


class PossessionStore:
    """Possession record persistence over an AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def add(self, record: Possession) -> Possession:
        """Insert a new record.

        Raises:
            DuplicateActivePossessionError: The plot's active-record index rejected it.
            ConflictingConcurrentUpdateError: The code was taken by another writer.
        """
        # A failed flush expires the instance, so read what the errors need first
        plot_id, code = record.plot_id, record.possession_code
        self._session.add(record)
        try:
            await self._session.flush()
        except IntegrityError as e:
            await self._session.rollback()
            if _is_active_plot_violation(e):
                raise await self.duplicate_for_plot(plot_id) from e
            raise ConflictingConcurrentUpdateError(code) from e
        return record

    async def save(self, record: Possession) -> Possession:
        """Flush pending changes of a loaded record.

        On an active-plot index violation the raised error carries no
        existing code: the transaction is unusable until the caller rolls
        back (or leaves its savepoint) and calls ``duplicate_for_plot``.

        Raises:
            ConflictingConcurrentUpdateError: Another writer bumped the version first.
            DuplicateActivePossessionError: A reopened record collides with an active one.
        """
        possession_id, plot_id = record.possession_id, record.plot_id
        try:
            await self._session.flush()
        except StaleDataError as e:
            logger.warning(
                "Stale possession update rejected",
                extra={"possession_id": str(possession_id)},
            )
            raise ConflictingConcurrentUpdateError(possession_id) from e
        except IntegrityError as e:
            if _is_active_plot_violation(e):
                raise DuplicateActivePossessionError(plot_id, None) from e
            raise
        return record

    async def duplicate_for_plot(
        self, plot_id: str, *, exclude_id: UUID | None = None
    ) -> DuplicateActivePossessionError:
        """Build the duplicate error for a plot, naming the record that holds it."""
        existing = await self.find_active_for_plot(plot_id, exclude_id=exclude_id)
        existing_code = existing.possession_code if existing is not None else None
        logger.info(
            "Active plot index rejected a write",
            extra={"plot_id": plot_id, "existing_code": existing_code},
        )
        return DuplicateActivePossessionError(plot_id, existing_code)

    async def get(self, possession_id: UUID, *, include_deleted: bool = False) -> Possession:
        """Fetch a record by id.

        Raises:
            PossessionNotFoundError: No such record, or it is soft-deleted.
        """
        query = select(Possession).where(Possession.possession_id == possession_id)
        if not include_deleted:
            query = query.where(Possession.is_deleted.is_(False))
        result = await self._session.execute(query)
        record = result.scalar_one_or_none()
        if record is None:
            raise PossessionNotFoundError(possession_id)
        return record

    async def get_by_code(self, code: str) -> Possession:
        """Fetch a record by its possession code (case-insensitive)."""
        normalized = code.strip().upper()
        result = await self._session.execute(
            select(Possession).where(
                Possession.possession_code == normalized,
                Possession.is_deleted.is_(False),
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise PossessionNotFoundError(normalized)
        return record

    async def find_active_for_plot(
        self, plot_id: str, *, exclude_id: UUID | None = None
    ) -> Possession | None:
        """Return the plot's active record, if any."""
        query = select(Possession).where(
            Possession.plot_id == plot_id,
            Possession.status.in_(ACTIVE_STATUSES),
            Possession.is_deleted.is_(False),
        )
        if exclude_id is not None:
            query = query.where(Possession.possession_id != exclude_id)
        result = await self._session.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def code_exists(self, code: str) -> bool:
        result = await self._session.execute(
            select(func.count()).select_from(Possession).where(Possession.possession_code == code)
        )
        return result.scalar_one() > 0

    async def codes_with_prefix(self, prefix: str) -> list[str]:
        """All codes starting with ``prefix-`` (deleted records included)."""
        result = await self._session.execute(
            select(Possession.possession_code).where(
                Possession.possession_code.like(f"{prefix}-%")
            )
        )
        return list(result.scalars().all())

    def _filtered(self, filters: PossessionFilters) -> Select[Any]:
        query = select(Possession).where(Possession.is_deleted.is_(False))
        if filters.plot_id:
            query = query.where(Possession.plot_id == filters.plot_id)
        if filters.file_id:
            query = query.where(Possession.file_id == filters.file_id)
        if filters.statuses:
            query = query.where(Possession.status.in_(filters.statuses))
        if filters.letter_collected is not None:
            query = query.where(Possession.letter_collected.is_(filters.letter_collected))
        if filters.handover_officer_id:
            query = query.where(Possession.handover_officer_id == filters.handover_officer_id)
        if filters.start_date:
            query = query.where(Possession.init_date >= filters.start_date)
        if filters.end_date:
            query = query.where(Possession.init_date <= filters.end_date)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            query = query.where(
                or_(
                    Possession.possession_code.ilike(pattern),
                    Possession.collector_name.ilike(pattern),
                    Possession.collector_nic.ilike(pattern),
                    Possession.remarks.ilike(pattern),
                    Possession.survey_remarks.ilike(pattern),
                    Possession.handover_remarks.ilike(pattern),
                )
            )
        if filters.min_duration is not None or filters.max_duration is not None:
            query = query.where(Possession.handover_date.is_not(None))
        return query

    async def query(
        self,
        filters: PossessionFilters,
        *,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "init_date",
        descending: bool = True,
    ) -> PossessionPage:
        """Filtered, sorted, paginated listing.

        Duration bounds are applied before pagination so page totals stay
        honest; they need the stored dates, so that part runs in Python.
        """
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        column = SORTABLE_COLUMNS.get(sort_by, Possession.init_date)
        order = column.desc() if descending else column.asc()
        base_query = self._filtered(filters).order_by(order, Possession.possession_code)

        if filters.min_duration is None and filters.max_duration is None:
            count_result = await self._session.execute(
                select(func.count()).select_from(base_query.subquery())
            )
            total = count_result.scalar_one()
            result = await self._session.execute(
                base_query.offset((page - 1) * limit).limit(limit)
            )
            items = list(result.scalars().all())
        else:
            result = await self._session.execute(base_query)
            matching = [r for r in result.scalars().all() if _within_duration(r, filters)]
            total = len(matching)
            items = matching[(page - 1) * limit : page * limit]

        return PossessionPage(
            items=items, total=total, page=page, limit=limit, summary=summarize(items)
        )

    async def list_all(self, filters: PossessionFilters) -> list[Possession]:
        """Unpaginated listing ordered by init_date, for reports."""
        result = await self._session.execute(
            self._filtered(filters).order_by(Possession.init_date.asc())
        )
        return [r for r in result.scalars().all() if _within_duration(r, filters)]

    async def soft_delete(self, record: Possession, actor: str) -> Possession:
        record.is_deleted = True
        record.deleted_at = utcnow()
        record.updated_by = actor
        record.updated_at = record.deleted_at
        return await self.save(record)


def _within_duration(record: Possession, filters: PossessionFilters) -> bool:
    if filters.min_duration is None and filters.max_duration is None:
        return True
    days = duration_days(record)
    if days is None:
        return False
    if filters.min_duration is not None and days < filters.min_duration:
        return False
    return not (filters.max_duration is not None and days > filters.max_duration)


def _is_active_plot_violation(error: IntegrityError) -> bool:
    # PostgreSQL names the index, SQLite names the column
    detail = str(error.orig)
    return "uq_possessions_active_plot" in detail or "possessions.plot_id" in detail
