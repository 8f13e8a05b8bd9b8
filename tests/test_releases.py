from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from epub_fixtures import build_epub, xhtml
from epreader.library import import_book
from epreader.models import BOOK_ACTIVE, BOOK_COMPLETED, BOOK_READY, ReleaseSchedule
from epreader.releases import (
    ALREADY_RELEASED,
    EXHAUSTED,
    NOT_DUE,
    PAUSED,
    RELEASED,
    available_releases,
    check_and_create_releases,
    create_schedule,
    delete_schedule,
    evaluate_schedule,
    mark_release_read,
    parse_release_time,
    update_schedule,
)
from epreader.settings import update_settings
from epreader.store import LibraryStore, ScheduleNotFoundError

USER = "reader-1"
# 2026-10-19 is a Monday.
MONDAY_10AM = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def _import_sections(store: LibraryStore, count: int = 6):
    documents = [
        (f"ch{idx}.xhtml", xhtml(f"<h1>Chapter {idx}</h1><p>Body of chapter {idx}.</p>"))
        for idx in range(1, count + 1)
    ]
    return import_book(store, USER, build_epub(documents), "book.epub")


def _schedule(store: LibraryStore, book_id: str, **overrides) -> ReleaseSchedule:
    fields = {
        "schedule_type": "custom",
        "days_of_week": [MONDAY_10AM.isoweekday()],
        "release_time": "09:00",
        "sections_per_release": 2,
    }
    fields.update(overrides)
    schedule, _ = create_schedule(store, book_id, **fields)
    return schedule


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("09:00", (9, 0)),
        ("7:5", (7, 5)),
        ("23:59:59", (23, 59)),
        ("18", (18, 0)),
    ],
)
def test_parse_release_time_accepts_clock_strings(value: str, expected: tuple[int, int]) -> None:
    parsed = parse_release_time(value)
    assert parsed is not None
    assert (parsed.hour, parsed.minute) == expected


@pytest.mark.parametrize("value", ["", "noon", "25:00", "10:75", "09:00:99", "9h30", None])
def test_parse_release_time_rejects_garbage(value) -> None:
    assert parse_release_time(value) is None


def test_release_created_once_per_instant(store: LibraryStore) -> None:
    book = _import_sections(store)
    _schedule(store, book.id)

    first = check_and_create_releases(store, USER, now=MONDAY_10AM)
    second = check_and_create_releases(store, USER, now=MONDAY_10AM + timedelta(minutes=5))

    assert [outcome.state for outcome in first] == [RELEASED]
    assert [outcome.state for outcome in second] == [ALREADY_RELEASED]
    releases = store.list_releases(book.id)
    assert len(releases) == 1
    release = releases[0]
    assert release.status == "released"
    assert release.scheduled_for == datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
    assert release.released_at == MONDAY_10AM
    sections = store.list_sections(book.id)
    assert release.section_ids == [sections[0].id, sections[1].id]


def test_not_due_before_release_time_or_on_other_days(store: LibraryStore) -> None:
    book = _import_sections(store)
    schedule = _schedule(store, book.id)
    early = MONDAY_10AM.replace(hour=8, minute=59)
    tuesday = MONDAY_10AM + timedelta(days=1)
    assert evaluate_schedule(store, schedule, early).state == NOT_DUE
    assert evaluate_schedule(store, schedule, tuesday).state == NOT_DUE
    assert store.list_releases(book.id) == []


def test_backpressure_pauses_and_resumes(store: LibraryStore) -> None:
    book = _import_sections(store)
    _schedule(store, book.id, days_of_week=[1, 2, 3, 4, 5, 6, 7], sections_per_release=1)

    for day in range(2):
        outcomes = check_and_create_releases(store, USER, now=MONDAY_10AM + timedelta(days=day))
        assert outcomes[0].state == RELEASED

    third_day = MONDAY_10AM + timedelta(days=2)
    assert check_and_create_releases(store, USER, now=third_day)[0].state == PAUSED
    assert len(store.list_releases(book.id)) == 2

    mark_release_read(store, store.list_releases(book.id)[0].id, USER)
    resumed = check_and_create_releases(store, USER, now=third_day + timedelta(minutes=1))
    assert resumed[0].state == RELEASED
    assert len(store.list_releases(book.id)) == 3


def test_releases_never_share_sections(store: LibraryStore) -> None:
    book = _import_sections(store, count=5)
    _schedule(store, book.id, days_of_week=[1, 2, 3, 4, 5, 6, 7], sections_per_release=2)

    states = []
    for day in range(5):
        now = MONDAY_10AM + timedelta(days=day)
        states.append(check_and_create_releases(store, USER, now=now)[0].state)
        for release in store.list_releases(book.id):
            if release.status == "released":
                mark_release_read(store, release.id, USER, now=now)

    assert states == [RELEASED, RELEASED, RELEASED, EXHAUSTED, EXHAUSTED]
    seen: list[str] = []
    for release in store.list_releases(book.id):
        assert not set(seen) & set(release.section_ids)
        seen.extend(release.section_ids)
    assert seen == [section.id for section in store.list_sections(book.id)]
    assert store.get_book(book.id).status == BOOK_COMPLETED


def test_malformed_time_and_empty_days_are_skipped(store: LibraryStore) -> None:
    book = _import_sections(store)
    schedule = _schedule(store, book.id)
    schedule.release_time = "half past nine"
    store.save_schedule(schedule)
    assert check_and_create_releases(store, USER, now=MONDAY_10AM)[0].state == NOT_DUE

    schedule.release_time = "09:00"
    schedule.days_of_week = []
    store.save_schedule(schedule)
    for day in range(7):
        outcome = check_and_create_releases(store, USER, now=MONDAY_10AM + timedelta(days=day))
        assert outcome[0].state == NOT_DUE
    assert store.list_releases(book.id) == []


def test_inactive_schedules_are_ignored(store: LibraryStore) -> None:
    book = _import_sections(store)
    _schedule(store, book.id)
    update_schedule(store, book.id, is_active=False)
    assert check_and_create_releases(store, USER, now=MONDAY_10AM) == []


def test_scheduler_uses_reader_timezone(store: LibraryStore) -> None:
    try:
        ZoneInfo("Asia/Tokyo")
    except ZoneInfoNotFoundError:
        pytest.skip("timezone database not available")
    book = _import_sections(store)
    update_settings(store, USER, timezone="Asia/Tokyo")
    # 20:00 UTC on Monday is 05:00 on Tuesday in Tokyo.
    now = datetime(2026, 10, 19, 20, 0, tzinfo=timezone.utc)
    _schedule(store, book.id, days_of_week=[2], release_time="04:30")
    outcomes = check_and_create_releases(store, USER, now=now)
    assert outcomes[0].state == RELEASED
    assert outcomes[0].release is not None
    assert outcomes[0].release.scheduled_for == datetime(2026, 10, 19, 19, 30, tzinfo=timezone.utc)


def test_daily_schedule_defaults_to_every_day(store: LibraryStore) -> None:
    book = _import_sections(store)
    schedule, release = create_schedule(store, book.id, schedule_type="daily")
    assert schedule.days_of_week == [1, 2, 3, 4, 5, 6, 7]
    assert schedule.release_time == "09:00"
    assert release is None
    assert store.get_book(book.id).status == BOOK_ACTIVE


def test_create_schedule_can_release_immediately(store: LibraryStore) -> None:
    book = _import_sections(store)
    late_sunday = datetime(2026, 10, 18, 23, 0, tzinfo=timezone.utc)
    schedule, release = create_schedule(
        store,
        book.id,
        schedule_type="weekly",
        days_of_week=[3],
        release_time="07:00",
        sections_per_release=3,
        release_now=True,
        now=late_sunday,
    )
    assert release is not None
    assert release.scheduled_for == late_sunday
    assert len(release.section_ids) == 3
    assert store.get_schedule(book.id).id == schedule.id


def test_create_schedule_replaces_existing(store: LibraryStore) -> None:
    book = _import_sections(store)
    first = _schedule(store, book.id)
    second = _schedule(store, book.id, sections_per_release=3)
    assert second.id == first.id
    assert store.get_schedule(book.id).sections_per_release == 3


@pytest.mark.parametrize(
    "overrides",
    [
        {"schedule_type": "monthly"},
        {"days_of_week": [0]},
        {"days_of_week": [8]},
        {"release_time": "25:00"},
        {"sections_per_release": 0},
        {"sections_per_release": 4},
    ],
)
def test_schedule_validation(store: LibraryStore, overrides: dict) -> None:
    book = _import_sections(store)
    with pytest.raises(ValueError):
        _schedule(store, book.id, **overrides)


def test_update_and_delete_schedule(store: LibraryStore) -> None:
    book = _import_sections(store)
    _schedule(store, book.id)
    updated = update_schedule(store, book.id, release_time="6:15", days_of_week=[5, 1, 5])
    assert updated.release_time == "06:15"
    assert updated.days_of_week == [1, 5]
    delete_schedule(store, book.id)
    assert store.get_schedule(book.id) is None
    assert store.get_book(book.id).status == BOOK_READY
    with pytest.raises(ScheduleNotFoundError):
        update_schedule(store, book.id, release_time="07:00")
    with pytest.raises(ScheduleNotFoundError):
        delete_schedule(store, book.id)


def test_mark_release_read_records_progress(store: LibraryStore) -> None:
    book = _import_sections(store)
    _schedule(store, book.id)
    outcome = check_and_create_releases(store, USER, now=MONDAY_10AM)[0]
    assert outcome.release is not None

    release = mark_release_read(store, outcome.release.id, USER)
    assert release.status == "read"
    for section_id in release.section_ids:
        progress = store.get_progress(USER, section_id)
        assert progress is not None
        assert progress.is_read
        assert progress.progress_percentage == 100
        assert progress.release_id == release.id


def test_available_releases_newest_first(store: LibraryStore) -> None:
    book = _import_sections(store)
    _schedule(store, book.id, days_of_week=[1, 2, 3, 4, 5, 6, 7], sections_per_release=1)
    check_and_create_releases(store, USER, now=MONDAY_10AM)
    check_and_create_releases(store, USER, now=MONDAY_10AM + timedelta(days=1))

    entries = available_releases(store, USER)
    assert len(entries) == 2
    assert entries[0]["released_at"] > entries[1]["released_at"]
    assert entries[0]["book_title"] == "Sample Book"
    assert entries[0]["sections"][0]["title"] == "Chapter 2"
    assert "content" not in entries[0]["sections"][0]
    assert available_releases(store, "someone-else") == []
