from datetime import date, datetime, timedelta, timezone

import services
from models import EntryStatus, QueueEntry, as_utc, utcnow


def _add(session, created_at, status=EntryStatus.ongoing, name="Patient"):
    session.add(
        QueueEntry(
            ticket_number=1,
            patient_name=name,
            position=1,
            status=status,
            created_at=created_at,
        )
    )
    session.commit()


def test_days_without_entries_are_zero_rows(session):
    _add(session, datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc), EntryStatus.ongoing)
    _add(session, datetime(2024, 1, 3, 16, 0, tzinfo=timezone.utc), EntryStatus.completed)

    days = services.stats_for_range(session, date(2024, 1, 1), date(2024, 1, 3))

    assert [d.model_dump() for d in days] == [
        {"date": "2024-01-01", "total": 1, "ongoing": 1, "completed": 0, "skipped": 0},
        {"date": "2024-01-02", "total": 0, "ongoing": 0, "completed": 0, "skipped": 0},
        {"date": "2024-01-03", "total": 1, "ongoing": 0, "completed": 1, "skipped": 0},
    ]


def test_counts_each_status(session):
    day = datetime(2024, 3, 5, 10, tzinfo=timezone.utc)
    _add(session, day, EntryStatus.ongoing)
    _add(session, day, EntryStatus.completed)
    _add(session, day, EntryStatus.completed)
    _add(session, day, EntryStatus.skipped)

    (point,) = services.stats_for_range(session, date(2024, 3, 5), date(2024, 3, 5))

    assert (point.total, point.ongoing, point.completed, point.skipped) == (4, 1, 2, 1)


def test_range_bounds_cover_whole_days(session):
    _add(session, datetime(2024, 2, 9, 23, 59, 59, tzinfo=timezone.utc), name="before")
    _add(session, datetime(2024, 2, 10, 0, 0, 0, tzinfo=timezone.utc), name="first")
    _add(session, datetime(2024, 2, 11, 23, 59, 59, 999999, tzinfo=timezone.utc), name="last")
    _add(session, datetime(2024, 2, 12, 0, 0, 0, tzinfo=timezone.utc), name="after")

    days = services.stats_for_range(session, date(2024, 2, 10), date(2024, 2, 11))

    assert [(d.date, d.total) for d in days] == [("2024-02-10", 1), ("2024-02-11", 1)]


def test_inverted_range_is_empty(session):
    _add(session, datetime(2024, 1, 2, 12, tzinfo=timezone.utc))
    assert services.stats_for_range(session, date(2024, 1, 3), date(2024, 1, 1)) == []


def test_month_boundary(session):
    _add(session, datetime(2024, 2, 29, 8, tzinfo=timezone.utc))
    _add(session, datetime(2024, 3, 1, 8, tzinfo=timezone.utc))

    days = services.stats_for_range(session, date(2024, 2, 28), date(2024, 3, 1))

    assert [d.date for d in days] == ["2024-02-28", "2024-02-29", "2024-03-01"]
    assert [d.total for d in days] == [0, 1, 1]


def test_timestamps_are_aware_utc(session):
    now = utcnow()
    assert now.utcoffset() == timedelta(0)

    entry = services.insert_queue_entry(session, "Dana")
    session.expire_all()
    created = as_utc(entry.created_at)
    assert created.tzinfo is not None

    today = created.date()
    (point,) = services.stats_for_range(session, today, today)
    assert point.total == 1


def test_as_utc_normalises_stored_values():
    naive = datetime(2024, 5, 1, 23, 30)
    assert as_utc(naive) == datetime(2024, 5, 1, 23, 30, tzinfo=timezone.utc)

    plus_two = datetime(2024, 5, 2, 1, 30, tzinfo=timezone(timedelta(hours=2)))
    assert as_utc(plus_two).date() == date(2024, 5, 1)
