"""Tests for possession reporting.

Tests cover:
- Timelines built from stored timestamps
- Statistics with zero-filled statuses and duration buckets
- Proximity search over handed-over plots
- Overdue lists
- Tabular reports and CSV rendering
"""

import csv
import io
from datetime import timedelta
from uuid import uuid4

import pytest

from possession.db.models.base import PossessionStatus
from possession.services.errors import PossessionNotFoundError
from possession.services.reporting import REPORT_COLUMNS, render_csv
from tests.factories import DEFAULT_NOW, build_possession

S = PossessionStatus


def days_ago(days: float):
    return DEFAULT_NOW - timedelta(days=days)


def handed_over(init_days_ago: float, duration: float, **overrides):
    init_date = days_ago(init_days_ago)
    return build_possession(
        status=S.HANDED_OVER,
        init_date=init_date,
        survey_date=init_date + timedelta(days=1),
        survey_person="A. Khan",
        handover_date=init_date + timedelta(days=duration),
        **overrides,
    )


async def seed(session, *records):
    session.add_all(records)
    await session.flush()
    return records


class TestTimeline:
    async def test_events_in_order(self, session, reporting, clock):
        (record,) = await seed(
            session,
            build_possession(
                status=S.HANDED_OVER,
                init_date=days_ago(10),
                survey_date=days_ago(8),
                survey_person="A. Khan",
                handover_date=days_ago(2),
                letter_collected=True,
                collector_name="Bilal",
                collection_date=days_ago(1),
            ),
        )

        timeline = await reporting.timeline(record.possession_id)
        events = list(timeline)

        assert [e.event for e in events] == [
            "Application Submitted",
            "Plot Surveyed",
            "Handed Over",
            "Letter Collected",
            "Current Status",
        ]
        assert events[1].description == "Surveyed by A. Khan"
        assert events[3].description == "Collected by Bilal"
        assert events[-1].date == clock()
        assert events[-1].description == "Current status: Handed Over"

    async def test_can_be_iterated_twice(self, session, reporting):
        (record,) = await seed(session, build_possession())

        timeline = await reporting.timeline(record.possession_id)

        assert list(timeline) == list(timeline)
        assert timeline.possession_code == record.possession_code

    async def test_ready_record_has_ready_event(self, session, reporting):
        (record,) = await seed(
            session,
            build_possession(status=S.READY, survey_date=days_ago(5), updated_at=days_ago(3)),
        )

        events = list(await reporting.timeline(record.possession_id))

        ready = [e for e in events if e.status == S.READY and e.event == "Ready for Handover"]
        assert [e.date for e in ready] == [days_ago(3)]
        assert events[1].description == "Surveyed by Unknown"

    async def test_unknown_record(self, reporting):
        with pytest.raises(PossessionNotFoundError):
            await reporting.timeline(uuid4())


class TestStatistics:
    async def test_counts_and_durations(self, session, reporting):
        await seed(
            session,
            build_possession(status=S.REQUESTED),
            build_possession(status=S.REQUESTED, letter_collected=True),
            build_possession(status=S.ON_HOLD),
            build_possession(status=S.CANCELLED),
            handed_over(50, 3, letter_collected=True),
            handed_over(60, 20),
            handed_over(120, 100),
        )

        stats = await reporting.statistics()

        assert stats.total == 7
        assert stats.by_status == {
            S.REQUESTED: 2,
            S.SURVEYED: 0,
            S.READY: 0,
            S.HANDED_OVER: 3,
            S.CANCELLED: 1,
            S.ON_HOLD: 1,
        }
        assert stats.pending == 3
        assert stats.collected == 2
        assert stats.processing_times.min_days == 3
        assert stats.processing_times.max_days == 100
        assert stats.processing_times.average_days == 41.0
        assert stats.distribution == {"0-7": 1, "8-30": 1, "31-90": 0, "91+": 1}

        handed = next(d for d in stats.details if d.status == S.HANDED_OVER)
        assert handed.count == 3
        assert handed.collected == 1
        surveyed = next(d for d in stats.details if d.status == S.SURVEYED)
        assert surveyed.average_duration_days is None

    async def test_window_bounds_init_date(self, session, reporting):
        await seed(
            session,
            build_possession(init_date=days_ago(40)),
            build_possession(init_date=days_ago(5)),
        )

        stats = await reporting.statistics(start_date=days_ago(10), end_date=DEFAULT_NOW)

        assert stats.total == 1

    async def test_empty_store(self, reporting):
        stats = await reporting.statistics()

        assert stats.total == 0
        assert set(stats.by_status.values()) == {0}
        assert stats.processing_times.average_days is None
        assert stats.processing_times.min_days is None


class TestProximitySearch:
    async def test_nearest_first_within_radius(self, session, reporting):
        origin, near, far, _, _ = await seed(
            session,
            handed_over(30, 5, latitude=31.5, longitude=74.3),
            handed_over(30, 5, latitude=31.51, longitude=74.3),
            handed_over(30, 5, latitude=31.6, longitude=74.3),
            build_possession(status=S.READY, latitude=31.5, longitude=74.3),
            handed_over(30, 5),
        )

        nearby = await reporting.proximity_search(31.5, 74.3, max_distance_meters=5000)

        assert [n.possession.possession_id for n in nearby] == [
            origin.possession_id,
            near.possession_id,
        ]
        assert nearby[0].distance_meters == 0
        assert nearby[1].distance_meters == pytest.approx(1113, rel=1e-3)

    async def test_limit(self, session, reporting):
        await seed(
            session,
            *(handed_over(30, 5, latitude=31.5, longitude=74.3 + i / 1000) for i in range(5)),
        )

        nearby = await reporting.proximity_search(31.5, 74.3, limit=2)

        assert len(nearby) == 2


class TestOverdue:
    async def test_active_records_past_threshold(self, session, reporting):
        oldest, older, *_ = await seed(
            session,
            build_possession(status=S.REQUESTED, init_date=days_ago(45)),
            build_possession(status=S.SURVEYED, init_date=days_ago(31)),
            build_possession(status=S.READY, init_date=days_ago(10)),
            handed_over(90, 5),
            build_possession(status=S.CANCELLED, init_date=days_ago(60)),
        )

        overdue = await reporting.overdue(days_threshold=30)

        assert [o.possession.possession_id for o in overdue] == [
            oldest.possession_id,
            older.possession_id,
        ]
        assert [o.overdue_days for o in overdue] == [45, 31]

    async def test_deleted_records_are_excluded(self, session, reporting):
        await seed(
            session,
            build_possession(init_date=days_ago(45), is_deleted=True, deleted_at=days_ago(1)),
        )

        assert await reporting.overdue(days_threshold=30) == []


class TestReport:
    async def test_rows_oldest_first(self, session, reporting):
        await seed(
            session,
            handed_over(20, 4, handover_officer_id="staff-1"),
            build_possession(init_date=days_ago(30), handover_officer_id="staff-1"),
            build_possession(init_date=days_ago(5), handover_officer_id="staff-2"),
        )

        rows = await reporting.generate_report(days_ago(60), DEFAULT_NOW)

        assert [r["init_date"] for r in rows] == [days_ago(30), days_ago(20), days_ago(5)]
        assert rows[1]["duration_days"] == 4
        assert rows[0]["duration_days"] is None

    async def test_filters(self, session, reporting):
        await seed(
            session,
            handed_over(20, 4, handover_officer_id="staff-1"),
            build_possession(init_date=days_ago(30), handover_officer_id="staff-1"),
            build_possession(init_date=days_ago(5), handover_officer_id="staff-2"),
        )

        rows = await reporting.generate_report(
            days_ago(60),
            DEFAULT_NOW,
            status=S.REQUESTED,
            handover_officer_id="staff-1",
        )

        assert len(rows) == 1
        assert rows[0]["status"] == "requested"

    async def test_render_csv(self, session, reporting):
        await seed(session, handed_over(20, 4))
        rows = await reporting.generate_report(days_ago(60), DEFAULT_NOW)

        parsed = list(csv.DictReader(io.StringIO(render_csv(rows))))

        assert tuple(parsed[0]) == REPORT_COLUMNS
        assert parsed[0]["status"] == "handed_over"
        assert parsed[0]["init_date"] == days_ago(20).isoformat()
        assert parsed[0]["collector_name"] == ""

    def test_render_csv_without_rows(self):
        assert render_csv([]).strip() == ",".join(REPORT_COLUMNS)
