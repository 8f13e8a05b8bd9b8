from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping
from uuid import uuid4

BOOK_PROCESSING = "processing"
BOOK_READY = "ready"
BOOK_ACTIVE = "active"
BOOK_COMPLETED = "completed"
BOOK_STATUSES = (BOOK_PROCESSING, BOOK_READY, BOOK_ACTIVE, BOOK_COMPLETED)

RELEASE_SCHEDULED = "scheduled"
RELEASE_RELEASED = "released"
RELEASE_READ = "read"
RELEASE_STATUSES = (RELEASE_SCHEDULED, RELEASE_RELEASED, RELEASE_READ)

SCHEDULE_TYPES = ("daily", "weekly", "custom")
ALL_WEEKDAYS = (1, 2, 3, 4, 5, 6, 7)

FONT_SIZES = ("small", "medium", "large")
THEMES = ("light", "dark", "sepia")


def new_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_time(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return default


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass(slots=True)
class Book:
    user_id: str
    title: str
    author: str | None = None
    cover_image: str | None = None
    total_chapters: int = 0
    total_sections: int = 0
    status: str = BOOK_PROCESSING
    source_name: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "author": self.author,
            "cover_image": self.cover_image,
            "total_chapters": self.total_chapters,
            "total_sections": self.total_sections,
            "status": self.status,
            "source_name": self.source_name,
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> Book:
        status = payload.get("status")
        return cls(
            id=str(payload["id"]),
            user_id=str(payload.get("user_id") or ""),
            title=str(payload.get("title") or "Untitled"),
            author=_str_or_none(payload.get("author")),
            cover_image=_str_or_none(payload.get("cover_image")),
            total_chapters=_int(payload.get("total_chapters")),
            total_sections=_int(payload.get("total_sections")),
            status=status if status in BOOK_STATUSES else BOOK_PROCESSING,
            source_name=_str_or_none(payload.get("source_name")),
            created_at=_parse_time(payload.get("created_at")) or utc_now(),
            updated_at=_parse_time(payload.get("updated_at")) or utc_now(),
        )


@dataclass(slots=True)
class Section:
    book_id: str
    chapter_number: int
    section_number: int
    title: str
    content: str
    word_count: int
    estimated_read_minutes: int
    order_index: int
    header_level: int = 1
    id: str = field(default_factory=new_id)

    def as_payload(self, include_content: bool = True) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "book_id": self.book_id,
            "chapter_number": self.chapter_number,
            "section_number": self.section_number,
            "title": self.title,
            "word_count": self.word_count,
            "estimated_read_minutes": self.estimated_read_minutes,
            "order_index": self.order_index,
            "header_level": self.header_level,
        }
        if include_content:
            payload["content"] = self.content
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> Section:
        return cls(
            id=str(payload["id"]),
            book_id=str(payload.get("book_id") or ""),
            chapter_number=_int(payload.get("chapter_number"), 1),
            section_number=_int(payload.get("section_number"), 1),
            title=str(payload.get("title") or ""),
            content=str(payload.get("content") or ""),
            word_count=_int(payload.get("word_count")),
            estimated_read_minutes=_int(payload.get("estimated_read_minutes")),
            order_index=_int(payload.get("order_index")),
            header_level=_int(payload.get("header_level"), 1),
        )


@dataclass(slots=True)
class ReleaseSchedule:
    book_id: str
    schedule_type: str = "daily"
    days_of_week: list[int] = field(default_factory=lambda: list(ALL_WEEKDAYS))
    release_time: str = "09:00"
    sections_per_release: int = 1
    is_active: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "schedule_type": self.schedule_type,
            "days_of_week": list(self.days_of_week),
            "release_time": self.release_time,
            "sections_per_release": self.sections_per_release,
            "is_active": self.is_active,
            "created_at": _format_time(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ReleaseSchedule:
        days = payload.get("days_of_week")
        day_list = [day for day in days if isinstance(day, int)] if isinstance(days, list) else []
        return cls(
            id=str(payload["id"]),
            book_id=str(payload.get("book_id") or ""),
            schedule_type=str(payload.get("schedule_type") or "daily"),
            days_of_week=day_list,
            release_time=str(payload.get("release_time") or ""),
            sections_per_release=_int(payload.get("sections_per_release"), 1),
            is_active=bool(payload.get("is_active", True)),
            created_at=_parse_time(payload.get("created_at")) or utc_now(),
        )


@dataclass(slots=True)
class Release:
    book_id: str
    section_ids: list[str]
    scheduled_for: datetime
    released_at: datetime | None = None
    status: str = RELEASE_SCHEDULED
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "section_ids": list(self.section_ids),
            "scheduled_for": _format_time(self.scheduled_for),
            "released_at": _format_time(self.released_at),
            "status": self.status,
            "created_at": _format_time(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> Release:
        ids = payload.get("section_ids")
        status = payload.get("status")
        return cls(
            id=str(payload["id"]),
            book_id=str(payload.get("book_id") or ""),
            section_ids=[str(item) for item in ids] if isinstance(ids, list) else [],
            scheduled_for=_parse_time(payload.get("scheduled_for")) or utc_now(),
            released_at=_parse_time(payload.get("released_at")),
            status=status if status in RELEASE_STATUSES else RELEASE_SCHEDULED,
            created_at=_parse_time(payload.get("created_at")) or utc_now(),
        )


@dataclass(slots=True)
class ReadingProgress:
    user_id: str
    section_id: str
    book_id: str
    release_id: str | None = None
    progress_percentage: int = 0
    last_paragraph_index: int = 0
    is_read: bool = False
    read_at: datetime | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def apply(
        self,
        *,
        progress_percentage: int | None = None,
        last_paragraph_index: int | None = None,
        is_read: bool | None = None,
        release_id: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Merge an update; reaching 100% marks the section read and it stays read."""
        moment = now or utc_now()
        if is_read:
            progress_percentage = 100
        if progress_percentage is not None:
            self.progress_percentage = max(0, min(100, progress_percentage))
        if last_paragraph_index is not None:
            self.last_paragraph_index = max(0, last_paragraph_index)
        if release_id is not None:
            self.release_id = release_id
        becomes_read = bool(is_read) or self.progress_percentage >= 100
        if becomes_read and not self.is_read:
            self.is_read = True
            self.read_at = moment
        self.updated_at = moment

    def as_payload(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "section_id": self.section_id,
            "book_id": self.book_id,
            "release_id": self.release_id,
            "progress_percentage": self.progress_percentage,
            "last_paragraph_index": self.last_paragraph_index,
            "is_read": self.is_read,
            "read_at": _format_time(self.read_at),
            "updated_at": _format_time(self.updated_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ReadingProgress:
        return cls(
            user_id=str(payload.get("user_id") or ""),
            section_id=str(payload["section_id"]),
            book_id=str(payload.get("book_id") or ""),
            release_id=_str_or_none(payload.get("release_id")),
            progress_percentage=_int(payload.get("progress_percentage")),
            last_paragraph_index=_int(payload.get("last_paragraph_index")),
            is_read=bool(payload.get("is_read", False)),
            read_at=_parse_time(payload.get("read_at")),
            updated_at=_parse_time(payload.get("updated_at")) or utc_now(),
        )


@dataclass(slots=True)
class UserSettings:
    user_id: str
    timezone: str = "UTC"
    font_size: str = "medium"
    theme: str = "light"

    def as_payload(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "timezone": self.timezone,
            "font_size": self.font_size,
            "theme": self.theme,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> UserSettings:
        font_size = payload.get("font_size")
        theme = payload.get("theme")
        return cls(
            user_id=str(payload.get("user_id") or ""),
            timezone=str(payload.get("timezone") or "UTC"),
            font_size=font_size if font_size in FONT_SIZES else "medium",
            theme=theme if theme in THEMES else "light",
        )


__all__ = [
    "ALL_WEEKDAYS",
    "BOOK_ACTIVE",
    "BOOK_COMPLETED",
    "BOOK_PROCESSING",
    "BOOK_READY",
    "BOOK_STATUSES",
    "Book",
    "FONT_SIZES",
    "RELEASE_READ",
    "RELEASE_RELEASED",
    "RELEASE_SCHEDULED",
    "ReadingProgress",
    "Release",
    "ReleaseSchedule",
    "SCHEDULE_TYPES",
    "Section",
    "THEMES",
    "UserSettings",
    "new_id",
    "utc_now",
]
