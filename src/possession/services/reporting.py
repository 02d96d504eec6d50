"""Read-only reporting over possession records.

Produces:
- Per-record timelines derived from stored timestamps
- Aggregate statistics (status counts, processing times, distribution)
- Proximity search around a point, for handed-over plots
- Overdue lists of active records
- Tabular reports, with a CSV rendering

Nothing here writes or caches; every call reflects the store as it is.
"""

from __future__ import annotations

import csv
import io
import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from possession.db.models.base import PossessionStatus, utcnow
from possession.db.models.possessions import Possession
from possession.services.store import (
    SECONDS_PER_DAY,
    PossessionFilters,
    PossessionStore,
    age_days,
    duration_days,
)
from possession.services.transitions import ACTIVE_STATUSES, STATUS_ORDER, display_name

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Planar approximation: one degree of latitude is about 111.3 km
METERS_PER_DEGREE = 111_300.0

# Upper bounds (inclusive) of the processing-time buckets, in days
DISTRIBUTION_BUCKETS: tuple[tuple[str, int | None], ...] = (
    ("0-7", 7),
    ("8-30", 30),
    ("31-90", 90),
    ("91+", None),
)

REPORT_COLUMNS = (
    "possession_code",
    "file_id",
    "plot_id",
    "handover_officer_id",
    "status",
    "init_date",
    "survey_date",
    "survey_person",
    "handover_date",
    "duration_days",
    "letter_collected",
    "collector_name",
    "collection_date",
)


@dataclass(frozen=True, slots=True)
class TimelineEvent:
    date: datetime
    event: str
    description: str
    status: PossessionStatus


class PossessionTimeline:
    """Chronological events of one record.

    Iterating rebuilds the events from the stored timestamps, so the
    sequence can be walked any number of times. ``as_of`` stamps the
    trailing "Current Status" event.
    """

    def __init__(self, record: Possession, as_of: datetime) -> None:
        self.possession_id = record.possession_id
        self.possession_code = record.possession_code
        self._record = record
        self.as_of = as_of

    def __iter__(self) -> Iterator[TimelineEvent]:
        return iter(sorted(self._events(), key=lambda e: e.date))

    def _events(self) -> Iterator[TimelineEvent]:
        record = self._record
        yield TimelineEvent(
            record.init_date,
            "Application Submitted",
            "Possession application submitted",
            PossessionStatus.REQUESTED,
        )
        if record.survey_date is not None:
            yield TimelineEvent(
                record.survey_date,
                "Plot Surveyed",
                f"Surveyed by {record.survey_person or 'Unknown'}",
                PossessionStatus.SURVEYED,
            )
        if record.status == PossessionStatus.READY:
            yield TimelineEvent(
                record.updated_at,
                "Ready for Handover",
                "All requirements met, ready for handover",
                PossessionStatus.READY,
            )
        if record.handover_date is not None:
            yield TimelineEvent(
                record.handover_date,
                "Handed Over",
                "Possession handed over to owner",
                PossessionStatus.HANDED_OVER,
            )
        if record.letter_collected and record.collection_date is not None:
            yield TimelineEvent(
                record.collection_date,
                "Letter Collected",
                f"Collected by {record.collector_name}",
                record.status,
            )
        yield TimelineEvent(
            self.as_of,
            "Current Status",
            f"Current status: {display_name(record.status)}",
            record.status,
        )


@dataclass(frozen=True, slots=True)
class ProcessingTimes:
    average_days: float | None
    min_days: int | None
    max_days: int | None


@dataclass(frozen=True, slots=True)
class StatusDetail:
    status: PossessionStatus
    count: int
    average_duration_days: float | None
    collected: int


@dataclass(frozen=True, slots=True)
class PossessionStatistics:
    """Aggregates over records initiated inside a window.

    Attributes:
        total: Records in the window.
        by_status: Count per status; every status is present.
        pending: Records still in an active status.
        collected: Records whose letter is collected.
        processing_times: Init-to-handover durations of handed-over records.
        distribution: Handed-over records per duration bucket.
        details: Per-status breakdown.
    """

    total: int
    by_status: dict[PossessionStatus, int]
    pending: int
    collected: int
    processing_times: ProcessingTimes
    distribution: dict[str, int]
    details: list[StatusDetail]


@dataclass(frozen=True, slots=True)
class NearbyPossession:
    possession: Possession
    distance_meters: float


@dataclass(frozen=True, slots=True)
class OverduePossession:
    possession: Possession
    overdue_days: int


def _bucket(days: int) -> str:
    for label, upper in DISTRIBUTION_BUCKETS:
        if upper is None or days <= upper:
            return label
    return DISTRIBUTION_BUCKETS[-1][0]


def _average(values: list[int]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None


class PossessionReportingService:
    """Reporting queries over the possession store."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._store = PossessionStore(session)
        self._clock = clock

    async def timeline(self, possession_id: UUID) -> PossessionTimeline:
        """Timeline of a record.

        Raises:
            PossessionNotFoundError: Unknown or deleted record.
        """
        record = await self._store.get(possession_id)
        return PossessionTimeline(record, as_of=self._clock())

    async def statistics(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> PossessionStatistics:
        """Aggregate statistics for records with init_date inside the window."""
        records = await self._store.list_all(
            PossessionFilters(start_date=start_date, end_date=end_date)
        )

        by_status = {status: 0 for status in STATUS_ORDER}
        durations_by_status: dict[PossessionStatus, list[int]] = {s: [] for s in STATUS_ORDER}
        collected_by_status = {status: 0 for status in STATUS_ORDER}
        handover_durations: list[int] = []
        distribution = {label: 0 for label, _ in DISTRIBUTION_BUCKETS}

        for record in records:
            by_status[record.status] += 1
            if record.letter_collected:
                collected_by_status[record.status] += 1
            days = duration_days(record)
            if days is None:
                continue
            durations_by_status[record.status].append(days)
            if record.status == PossessionStatus.HANDED_OVER:
                handover_durations.append(days)
                distribution[_bucket(days)] += 1

        collected = sum(collected_by_status.values())
        return PossessionStatistics(
            total=len(records),
            by_status=by_status,
            pending=sum(by_status[s] for s in ACTIVE_STATUSES),
            collected=collected,
            processing_times=ProcessingTimes(
                average_days=_average(handover_durations),
                min_days=min(handover_durations, default=None),
                max_days=max(handover_durations, default=None),
            ),
            distribution=distribution,
            details=[
                StatusDetail(
                    status=status,
                    count=by_status[status],
                    average_duration_days=_average(durations_by_status[status]),
                    collected=collected_by_status[status],
                )
                for status in STATUS_ORDER
            ],
        )

    async def proximity_search(
        self,
        latitude: float,
        longitude: float,
        max_distance_meters: float = 5000.0,
        limit: int = 50,
    ) -> list[NearbyPossession]:
        """Handed-over records within a radius, nearest first.

        Distance uses a flat-earth approximation (degrees times 111.3 km),
        which is adequate at city scale.
        """
        radius = max_distance_meters / METERS_PER_DEGREE
        result = await self._session.execute(
            select(Possession).where(
                Possession.status == PossessionStatus.HANDED_OVER,
                Possession.is_deleted.is_(False),
                Possession.latitude.is_not(None),
                Possession.longitude.is_not(None),
                Possession.latitude.between(latitude - radius, latitude + radius),
                Possession.longitude.between(longitude - radius, longitude + radius),
            )
        )

        nearby = []
        for record in result.scalars().all():
            degrees = math.hypot(record.latitude - latitude, record.longitude - longitude)
            if degrees <= radius:
                nearby.append(NearbyPossession(record, degrees * METERS_PER_DEGREE))
        nearby.sort(key=lambda n: (n.distance_meters, n.possession.possession_code))
        return nearby[:limit]

    async def overdue(self, days_threshold: int = 30) -> list[OverduePossession]:
        """Active records initiated more than ``days_threshold`` days ago, oldest first."""
        now = self._clock()
        cutoff = now.timestamp() - days_threshold * SECONDS_PER_DAY
        result = await self._session.execute(
            select(Possession)
            .where(
                Possession.status.in_(ACTIVE_STATUSES),
                Possession.is_deleted.is_(False),
            )
            .order_by(Possession.init_date.asc())
        )
        return [
            OverduePossession(record, age_days(record, now))
            for record in result.scalars().all()
            if record.init_date.timestamp() < cutoff
        ]

    async def generate_report(
        self,
        start_date: datetime,
        end_date: datetime,
        *,
        status: PossessionStatus | None = None,
        handover_officer_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Tabular rows for records initiated inside the window, oldest first."""
        filters = PossessionFilters(
            start_date=start_date,
            end_date=end_date,
            statuses=[status] if status else [],
            handover_officer_id=handover_officer_id,
        )
        records = await self._store.list_all(filters)
        logger.info(
            "Possession report generated",
            extra={"rows": len(records), "status": status.value if status else None},
        )
        return [report_row(record) for record in records]


def report_row(record: Possession) -> dict[str, Any]:
    return {
        "possession_code": record.possession_code,
        "file_id": record.file_id,
        "plot_id": record.plot_id,
        "handover_officer_id": record.handover_officer_id,
        "status": record.status.value,
        "init_date": record.init_date,
        "survey_date": record.survey_date,
        "survey_person": record.survey_person,
        "handover_date": record.handover_date,
        "duration_days": duration_days(record),
        "letter_collected": record.letter_collected,
        "collector_name": record.collector_name,
        "collection_date": record.collection_date,
    }


def render_csv(rows: list[dict[str, Any]]) -> str:
    """Render report rows as CSV with a header line."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=REPORT_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(
            {
                key: value.isoformat() if hasattr(value, "isoformat") else value
                for key, value in row.items()
            }
        )
    return buffer.getvalue()
