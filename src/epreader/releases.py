from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timezone, tzinfo
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import (
    ALL_WEEKDAYS,
    BOOK_ACTIVE,
    BOOK_COMPLETED,
    BOOK_PROCESSING,
    BOOK_READY,
    RELEASE_READ,
    RELEASE_RELEASED,
    SCHEDULE_TYPES,
    Book,
    Release,
    ReleaseSchedule,
    Section,
    utc_now,
)
from .store import ScheduleNotFoundError, Store

logger = logging.getLogger(__name__)

PAUSE_AFTER_UNREAD = 2
MAX_SECTIONS_PER_RELEASE = 3

NOT_DUE = "not_due"
ALREADY_RELEASED = "already_released"
PAUSED = "paused"
EXHAUSTED = "exhausted"
RELEASED = "released"

_TIME_PATTERN = re.compile(r"^\s*(\d{1,2})(?::(\d{1,2}))?(?::(\d{1,2}))?\s*$")


@dataclass(slots=True)
class ScheduleOutcome:
    book_id: str
    state: str
    release: Release | None = None


def parse_release_time(value: object) -> time | None:
    """Parse ``HH[:MM[:SS]]``; anything else gives ``None``."""
    if not isinstance(value, str):
        return None
    match = _TIME_PATTERN.match(value)
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    seconds = int(match.group(3) or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        return None
    return time(hour=hours, minute=minutes)


def resolve_timezone(name: str | None) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r, using UTC", name)
        return timezone.utc


def release_instant(now: datetime, release_time: time) -> datetime:
    """Today's release moment in ``now``'s timezone, returned in UTC."""
    local = now.replace(
        hour=release_time.hour,
        minute=release_time.minute,
        second=0,
        microsecond=0,
    )
    return local.astimezone(timezone.utc)


def _released_section_ids(releases: list[Release]) -> set[str]:
    taken: set[str] = set()
    for release in releases:
        taken.update(release.section_ids)
    return taken


def next_sections(store: Store, book_id: str, count: int) -> list[Section]:
    """The first ``count`` sections, by order index, not yet part of any release."""
    if count <= 0:
        return []
    taken = _released_section_ids(store.list_releases(book_id))
    pending = [section for section in store.list_sections(book_id) if section.id not in taken]
    return pending[:count]


def unread_release_count(store: Store, book_id: str) -> int:
    return sum(1 for release in store.list_releases(book_id) if release.status == RELEASE_RELEASED)


def _create_release(
    store: Store,
    schedule: ReleaseSchedule,
    scheduled_for: datetime,
    now: datetime,
) -> ScheduleOutcome:
    sections = next_sections(store, schedule.book_id, schedule.sections_per_release)
    if not sections:
        refresh_book_status(store, schedule.book_id)
        return ScheduleOutcome(schedule.book_id, EXHAUSTED)
    release = Release(
        book_id=schedule.book_id,
        section_ids=[section.id for section in sections],
        scheduled_for=scheduled_for,
        released_at=now.astimezone(timezone.utc),
        status=RELEASE_RELEASED,
    )
    inserted = store.insert_release(release)
    if inserted is None:
        return ScheduleOutcome(schedule.book_id, ALREADY_RELEASED)
    logger.info(
        "Released %d section(s) of book %s for %s",
        len(inserted.section_ids),
        schedule.book_id,
        scheduled_for.isoformat(),
    )
    return ScheduleOutcome(schedule.book_id, RELEASED, inserted)


def evaluate_schedule(store: Store, schedule: ReleaseSchedule, now: datetime) -> ScheduleOutcome:
    """
    Run one scheduling cycle for ``schedule``.

    ``now`` must be timezone aware and expressed in the reader's timezone,
    since that decides the weekday and the release moment. Nothing is raised
    for malformed schedules: they are reported as not due.
    """
    if now.isoweekday() not in schedule.days_of_week:
        return ScheduleOutcome(schedule.book_id, NOT_DUE)
    release_time = parse_release_time(schedule.release_time)
    if release_time is None:
        logger.debug(
            "Skipping schedule %s: malformed release time %r",
            schedule.id,
            schedule.release_time,
        )
        return ScheduleOutcome(schedule.book_id, NOT_DUE)
    scheduled_for = release_instant(now, release_time)
    if now < scheduled_for:
        return ScheduleOutcome(schedule.book_id, NOT_DUE)
    releases = store.list_releases(schedule.book_id)
    if any(release.scheduled_for == scheduled_for for release in releases):
        return ScheduleOutcome(schedule.book_id, ALREADY_RELEASED)
    unread = sum(1 for release in releases if release.status == RELEASE_RELEASED)
    if unread >= PAUSE_AFTER_UNREAD:
        logger.debug("Pausing book %s: %d unread releases", schedule.book_id, unread)
        return ScheduleOutcome(schedule.book_id, PAUSED)
    return _create_release(store, schedule, scheduled_for, now)


def check_and_create_releases(
    store: Store,
    user_id: str,
    now: datetime | None = None,
) -> list[ScheduleOutcome]:
    """Evaluate every active schedule on ``user_id``'s books."""
    settings = store.get_settings(user_id)
    zone = resolve_timezone(settings.timezone if settings else None)
    moment = now or utc_now()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local_now = moment.astimezone(zone)
    outcomes: list[ScheduleOutcome] = []
    for schedule in store.list_active_schedules(user_id):
        try:
            outcomes.append(evaluate_schedule(store, schedule, local_now))
        except LookupError as exc:
            logger.warning("Skipping schedule %s: %s", schedule.id, exc)
    return outcomes


def create_immediate_release(
    store: Store,
    schedule: ReleaseSchedule,
    now: datetime | None = None,
) -> Release | None:
    """Release the next sections right away, ignoring day, time and backlog."""
    moment = (now or utc_now()).astimezone(timezone.utc)
    outcome = _create_release(store, schedule, moment, moment)
    return outcome.release


# Schedule management


def _validate_days(days: object) -> list[int]:
    if not isinstance(days, (list, tuple, set)):
        raise ValueError("days_of_week must be a list of weekday numbers")
    cleaned: set[int] = set()
    for day in days:
        if isinstance(day, bool) or not isinstance(day, int) or day not in ALL_WEEKDAYS:
            raise ValueError(f"Invalid weekday: {day!r} (expected 1=Monday..7=Sunday)")
        cleaned.add(day)
    return sorted(cleaned)


def _validate_schedule_fields(updates: Mapping[str, object]) -> dict[str, object]:
    cleaned: dict[str, object] = {}
    if "schedule_type" in updates and updates["schedule_type"] is not None:
        schedule_type = updates["schedule_type"]
        if schedule_type not in SCHEDULE_TYPES:
            raise ValueError(f"Unknown schedule type: {schedule_type!r}")
        cleaned["schedule_type"] = schedule_type
    if "days_of_week" in updates and updates["days_of_week"] is not None:
        cleaned["days_of_week"] = _validate_days(updates["days_of_week"])
    if "release_time" in updates and updates["release_time"] is not None:
        parsed = parse_release_time(updates["release_time"])
        if parsed is None:
            raise ValueError(f"Invalid release time: {updates['release_time']!r}")
        cleaned["release_time"] = parsed.strftime("%H:%M")
    if "sections_per_release" in updates and updates["sections_per_release"] is not None:
        count = updates["sections_per_release"]
        if (
            isinstance(count, bool)
            or not isinstance(count, int)
            or not 1 <= count <= MAX_SECTIONS_PER_RELEASE
        ):
            raise ValueError(
                f"sections_per_release must be between 1 and {MAX_SECTIONS_PER_RELEASE}"
            )
        cleaned["sections_per_release"] = count
    if "is_active" in updates and updates["is_active"] is not None:
        cleaned["is_active"] = bool(updates["is_active"])
    return cleaned


def get_schedule(store: Store, book_id: str) -> ReleaseSchedule | None:
    store.get_book(book_id)
    return store.get_schedule(book_id)


def create_schedule(
    store: Store,
    book_id: str,
    *,
    schedule_type: str = "daily",
    days_of_week: list[int] | None = None,
    release_time: str = "09:00",
    sections_per_release: int = 1,
    release_now: bool = False,
    now: datetime | None = None,
) -> tuple[ReleaseSchedule, Release | None]:
    """
    Create (or replace) the schedule of ``book_id``.

    A daily schedule given no weekdays runs every day. With ``release_now``
    the first batch of sections is released immediately.
    """
    store.get_book(book_id)
    if days_of_week is None and schedule_type == "daily":
        days_of_week = list(ALL_WEEKDAYS)
    fields = _validate_schedule_fields(
        {
            "schedule_type": schedule_type,
            "days_of_week": days_of_week if days_of_week is not None else [],
            "release_time": release_time,
            "sections_per_release": sections_per_release,
        }
    )
    existing = store.get_schedule(book_id)
    schedule = ReleaseSchedule(book_id=book_id, **fields)  # type: ignore[arg-type]
    if existing is not None:
        schedule.id = existing.id
        schedule.created_at = existing.created_at
    store.save_schedule(schedule)
    release = create_immediate_release(store, schedule, now=now) if release_now else None
    refresh_book_status(store, book_id)
    return schedule, release


def update_schedule(store: Store, book_id: str, **updates: object) -> ReleaseSchedule:
    schedule = store.get_schedule(book_id)
    if schedule is None:
        raise ScheduleNotFoundError(book_id)
    for name, value in _validate_schedule_fields(updates).items():
        setattr(schedule, name, value)
    store.save_schedule(schedule)
    refresh_book_status(store, book_id)
    return schedule


def delete_schedule(store: Store, book_id: str) -> None:
    store.delete_schedule(book_id)
    refresh_book_status(store, book_id)


# Release reads and transitions


def available_releases(store: Store, user_id: str) -> list[dict[str, object]]:
    """Released, not yet read releases of ``user_id``, newest first."""
    entries: list[tuple[datetime, dict[str, object]]] = []
    for book in store.list_books(user_id):
        releases = [r for r in store.list_releases(book.id) if r.status == RELEASE_RELEASED]
        if not releases:
            continue
        sections = {section.id: section for section in store.list_sections(book.id)}
        for release in releases:
            payload = release.as_payload()
            payload["book_title"] = book.title
            payload["book_author"] = book.author
            payload["sections"] = [
                sections[section_id].as_payload(include_content=False)
                for section_id in release.section_ids
                if section_id in sections
            ]
            entries.append((release.released_at or release.scheduled_for, payload))
    entries.sort(key=lambda item: item[0], reverse=True)
    return [payload for _, payload in entries]


def mark_release_read(
    store: Store,
    release_id: str,
    user_id: str,
    now: datetime | None = None,
) -> Release:
    release = store.get_release(release_id)
    moment = now or utc_now()
    release.status = RELEASE_READ
    store.update_release(release)
    for section_id in release.section_ids:
        store.upsert_progress(
            user_id,
            section_id,
            release.book_id,
            is_read=True,
            release_id=release.id,
            now=moment,
        )
    refresh_book_status(store, release.book_id)
    return release


def complete_read_releases(store: Store, user_id: str, book_id: str) -> list[Release]:
    """Mark ``released`` releases whose sections are all read as ``read``."""
    read_ids = {
        record.section_id for record in store.list_progress(user_id, book_id) if record.is_read
    }
    completed: list[Release] = []
    for release in store.list_releases(book_id):
        if release.status != RELEASE_RELEASED or not release.section_ids:
            continue
        if all(section_id in read_ids for section_id in release.section_ids):
            release.status = RELEASE_READ
            store.update_release(release)
            completed.append(release)
    if completed:
        refresh_book_status(store, book_id)
    return completed


def refresh_book_status(store: Store, book_id: str) -> Book:
    book = store.get_book(book_id)
    if book.status == BOOK_PROCESSING:
        return book
    sections = store.list_sections(book_id)
    releases = store.list_releases(book_id)
    taken = _released_section_ids(releases)
    if (
        sections
        and all(section.id in taken for section in sections)
        and all(release.status == RELEASE_READ for release in releases)
    ):
        status = BOOK_COMPLETED
    elif store.get_schedule(book_id) is not None:
        status = BOOK_ACTIVE
    else:
        status = BOOK_READY
    if status != book.status:
        book.status = status
        book.updated_at = utc_now()
        store.update_book(book)
    return book


__all__ = [
    "ALREADY_RELEASED",
    "EXHAUSTED",
    "MAX_SECTIONS_PER_RELEASE",
    "NOT_DUE",
    "PAUSED",
    "PAUSE_AFTER_UNREAD",
    "RELEASED",
    "ScheduleOutcome",
    "available_releases",
    "check_and_create_releases",
    "complete_read_releases",
    "create_immediate_release",
    "create_schedule",
    "delete_schedule",
    "evaluate_schedule",
    "get_schedule",
    "mark_release_read",
    "next_sections",
    "parse_release_time",
    "refresh_book_status",
    "release_instant",
    "resolve_timezone",
    "unread_release_count",
]
