from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .models import ReadingProgress
from .releases import complete_read_releases
from .store import Store


@dataclass(slots=True)
class BookProgress:
    total_sections: int
    read_sections: int
    total_words: int
    read_words: int
    progress_percentage: float
    estimated_minutes_remaining: int

    def as_payload(self) -> dict[str, object]:
        return {
            "total_sections": self.total_sections,
            "read_sections": self.read_sections,
            "total_words": self.total_words,
            "read_words": self.read_words,
            "progress_percentage": self.progress_percentage,
            "estimated_minutes_remaining": self.estimated_minutes_remaining,
        }


def _validate_percentage(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("progress_percentage must be a number")
    if not 0 <= value <= 100:
        raise ValueError("progress_percentage must be between 0 and 100")
    return int(round(value))


def update_progress(
    store: Store,
    user_id: str,
    section_id: str,
    progress_percentage: float,
    last_paragraph_index: int = 0,
    release_id: str | None = None,
    now: datetime | None = None,
) -> ReadingProgress:
    """
    Record how far ``user_id`` got in a section.

    Reaching 100% marks the section read; a read section stays read even if
    later updates report less. Releases whose sections are now all read are
    marked read as well.
    """
    percentage = _validate_percentage(progress_percentage)
    if isinstance(last_paragraph_index, bool) or not isinstance(last_paragraph_index, int):
        raise ValueError("last_paragraph_index must be an integer")
    if last_paragraph_index < 0:
        raise ValueError("last_paragraph_index must not be negative")
    section = store.get_section(section_id)
    record = store.upsert_progress(
        user_id,
        section_id,
        section.book_id,
        progress_percentage=percentage,
        last_paragraph_index=last_paragraph_index,
        release_id=release_id,
        now=now,
    )
    if record.is_read:
        complete_read_releases(store, user_id, section.book_id)
    return record


def mark_section_read(
    store: Store,
    user_id: str,
    section_id: str,
    release_id: str | None = None,
    now: datetime | None = None,
) -> ReadingProgress:
    section = store.get_section(section_id)
    record = store.upsert_progress(
        user_id,
        section_id,
        section.book_id,
        is_read=True,
        release_id=release_id,
        now=now,
    )
    complete_read_releases(store, user_id, section.book_id)
    return record


def get_section_progress(store: Store, user_id: str, section_id: str) -> dict[str, object]:
    """Section content together with the reader's progress (defaults if unseen)."""
    section = store.get_section(section_id)
    record = store.get_progress(user_id, section_id)
    if record is None:
        progress: dict[str, object] = {
            "progress_percentage": 0,
            "last_paragraph_index": 0,
            "is_read": False,
        }
    else:
        progress = record.as_payload()
    return {"section": section.as_payload(), "progress": progress}


def book_progress(store: Store, user_id: str, book_id: str) -> BookProgress:
    sections = store.list_sections(book_id)
    read_ids = {
        record.section_id for record in store.list_progress(user_id, book_id) if record.is_read
    }
    read = [section for section in sections if section.id in read_ids]
    unread = [section for section in sections if section.id not in read_ids]
    total = len(sections)
    return BookProgress(
        total_sections=total,
        read_sections=len(read),
        total_words=sum(section.word_count for section in sections),
        read_words=sum(section.word_count for section in read),
        progress_percentage=(len(read) / total * 100) if total else 0.0,
        estimated_minutes_remaining=sum(section.estimated_read_minutes for section in unread),
    )


__all__ = [
    "BookProgress",
    "book_progress",
    "get_section_progress",
    "mark_section_read",
    "update_progress",
]
