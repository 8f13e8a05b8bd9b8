from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Any, Callable, Protocol

from .epub import CoverImage
from .models import (
    Book,
    ReadingProgress,
    Release,
    ReleaseSchedule,
    Section,
    UserSettings,
)

logger = logging.getLogger(__name__)

BOOKS_DIRNAME = "books"
PROGRESS_DIRNAME = "progress"
SETTINGS_FILENAME = "settings.json"
BOOK_FILENAME = "book.json"
SECTIONS_FILENAME = "sections.json"
SCHEDULE_FILENAME = "schedule.json"
RELEASES_FILENAME = "releases.json"
SOURCE_FILENAME = "source.epub"
_COVER_EXTS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/svg+xml": ".svg",
    "image/webp": ".webp",
}


class BookNotFoundError(LookupError):
    pass


class SectionNotFoundError(LookupError):
    pass


class ReleaseNotFoundError(LookupError):
    pass


class ScheduleNotFoundError(LookupError):
    pass


class Store(Protocol):
    """Persistence operations the reading services depend on."""

    def read_package_bytes(self, book_id: str) -> bytes: ...

    def save_package(self, book_id: str, data: bytes) -> Path: ...

    def save_cover(self, book_id: str, cover: CoverImage) -> str: ...

    def cover_path(self, book_id: str) -> Path | None: ...

    def create_book(self, book: Book) -> Book: ...

    def get_book(self, book_id: str) -> Book: ...

    def list_books(self, user_id: str) -> list[Book]: ...

    def update_book(self, book: Book) -> Book: ...

    def delete_book(self, book_id: str) -> None: ...

    def insert_sections(self, book_id: str, sections: list[Section]) -> None: ...

    def list_sections(self, book_id: str) -> list[Section]: ...

    def get_section(self, section_id: str) -> Section: ...

    def get_schedule(self, book_id: str) -> ReleaseSchedule | None: ...

    def save_schedule(self, schedule: ReleaseSchedule) -> ReleaseSchedule: ...

    def delete_schedule(self, book_id: str) -> None: ...

    def list_active_schedules(self, user_id: str) -> list[ReleaseSchedule]: ...

    def list_releases(self, book_id: str) -> list[Release]: ...

    def get_release(self, release_id: str) -> Release: ...

    def insert_release(self, release: Release) -> Release | None: ...

    def update_release(self, release: Release) -> Release: ...

    def upsert_progress(
        self,
        user_id: str,
        section_id: str,
        book_id: str,
        **fields: Any,
    ) -> ReadingProgress: ...

    def get_progress(self, user_id: str, section_id: str) -> ReadingProgress | None: ...

    def list_progress(self, user_id: str, book_id: str | None = None) -> list[ReadingProgress]: ...

    def get_settings(self, user_id: str) -> UserSettings | None: ...

    def ensure_settings(self, user_id: str, factory: Callable[[], UserSettings]) -> UserSettings: ...

    def save_settings(self, settings: UserSettings) -> UserSettings: ...


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return default


def _write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    os.replace(tmp_path, path)


def _user_key(user_id: str) -> str:
    return hashlib.sha1(user_id.encode("utf-8")).hexdigest()[:16]


class LibraryStore:
    """
    JSON documents under a library directory.

    Every book owns ``books/<id>/`` holding its metadata, sections, schedule,
    releases and uploaded EPUB. Reading progress lives in one file per user
    under ``progress/`` and user settings share ``settings.json``. A single
    re-entrant lock serializes every read-modify-write in the process.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.books_dir = self.root / BOOKS_DIRNAME
        self.progress_dir = self.root / PROGRESS_DIRNAME
        self.settings_path = self.root / SETTINGS_FILENAME
        self.lock = threading.RLock()
        self.books_dir.mkdir(parents=True, exist_ok=True)
        self.progress_dir.mkdir(parents=True, exist_ok=True)

    # Books

    def _book_dir(self, book_id: str) -> Path:
        if not book_id or "/" in book_id or "\\" in book_id or book_id.startswith("."):
            raise BookNotFoundError(book_id)
        return self.books_dir / book_id

    def _existing_book_dir(self, book_id: str) -> Path:
        book_dir = self._book_dir(book_id)
        if not (book_dir / BOOK_FILENAME).exists():
            raise BookNotFoundError(book_id)
        return book_dir

    def create_book(self, book: Book) -> Book:
        with self.lock:
            book_dir = self._book_dir(book.id)
            book_dir.mkdir(parents=True, exist_ok=True)
            _write_json(book_dir / BOOK_FILENAME, book.as_payload())
        return book

    def get_book(self, book_id: str) -> Book:
        with self.lock:
            payload = _read_json(self._existing_book_dir(book_id) / BOOK_FILENAME, None)
        if not isinstance(payload, dict):
            raise BookNotFoundError(book_id)
        return Book.from_payload(payload)

    def _iter_books(self) -> list[Book]:
        books: list[Book] = []
        for entry in sorted(self.books_dir.iterdir()):
            if not entry.is_dir():
                continue
            payload = _read_json(entry / BOOK_FILENAME, None)
            if isinstance(payload, dict) and "id" in payload:
                books.append(Book.from_payload(payload))
        return books

    def list_books(self, user_id: str) -> list[Book]:
        with self.lock:
            books = [book for book in self._iter_books() if book.user_id == user_id]
        books.sort(key=lambda book: book.created_at, reverse=True)
        return books

    def update_book(self, book: Book) -> Book:
        with self.lock:
            book_dir = self._existing_book_dir(book.id)
            _write_json(book_dir / BOOK_FILENAME, book.as_payload())
        return book

    def delete_book(self, book_id: str) -> None:
        with self.lock:
            book_dir = self._existing_book_dir(book_id)
            shutil.rmtree(book_dir)
            for progress_path in self.progress_dir.glob("*.json"):
                raw = _read_json(progress_path, {})
                if not isinstance(raw, dict):
                    continue
                kept = {
                    key: value
                    for key, value in raw.items()
                    if not (isinstance(value, dict) and value.get("book_id") == book_id)
                }
                if len(kept) != len(raw):
                    _write_json(progress_path, kept)

    # Stored files

    def save_package(self, book_id: str, data: bytes) -> Path:
        with self.lock:
            target = self._existing_book_dir(book_id) / SOURCE_FILENAME
            target.write_bytes(data)
        return target

    def read_package_bytes(self, book_id: str) -> bytes:
        with self.lock:
            path = self._existing_book_dir(book_id) / SOURCE_FILENAME
        try:
            return path.read_bytes()
        except OSError as exc:
            raise BookNotFoundError(f"{book_id}: no stored EPUB") from exc

    def save_cover(self, book_id: str, cover: CoverImage) -> str:
        suffix = Path(cover.path).suffix.lower()
        if not suffix:
            suffix = _COVER_EXTS.get((cover.media_type or "").lower(), ".img")
        filename = f"cover{suffix}"
        with self.lock:
            book_dir = self._existing_book_dir(book_id)
            for stale in book_dir.glob("cover.*"):
                stale.unlink(missing_ok=True)
            (book_dir / filename).write_bytes(cover.data)
        return filename

    def cover_path(self, book_id: str) -> Path | None:
        book = self.get_book(book_id)
        if not book.cover_image:
            return None
        path = self._book_dir(book_id) / book.cover_image
        return path if path.is_file() else None

    # Sections

    def insert_sections(self, book_id: str, sections: list[Section]) -> None:
        with self.lock:
            book_dir = self._existing_book_dir(book_id)
            existing = self._load_sections(book_dir)
            existing.extend(sections)
            existing.sort(key=lambda section: section.order_index)
            _write_json(
                book_dir / SECTIONS_FILENAME,
                [section.as_payload() for section in existing],
            )

    def _load_sections(self, book_dir: Path) -> list[Section]:
        raw = _read_json(book_dir / SECTIONS_FILENAME, [])
        if not isinstance(raw, list):
            return []
        return [Section.from_payload(item) for item in raw if isinstance(item, dict) and "id" in item]

    def list_sections(self, book_id: str) -> list[Section]:
        with self.lock:
            sections = self._load_sections(self._existing_book_dir(book_id))
        sections.sort(key=lambda section: section.order_index)
        return sections

    def get_section(self, section_id: str) -> Section:
        with self.lock:
            for entry in sorted(self.books_dir.iterdir()):
                if not entry.is_dir():
                    continue
                for section in self._load_sections(entry):
                    if section.id == section_id:
                        return section
        raise SectionNotFoundError(section_id)

    # Schedules

    def get_schedule(self, book_id: str) -> ReleaseSchedule | None:
        with self.lock:
            payload = _read_json(self._existing_book_dir(book_id) / SCHEDULE_FILENAME, None)
        if not isinstance(payload, dict) or "id" not in payload:
            return None
        return ReleaseSchedule.from_payload(payload)

    def save_schedule(self, schedule: ReleaseSchedule) -> ReleaseSchedule:
        with self.lock:
            book_dir = self._existing_book_dir(schedule.book_id)
            _write_json(book_dir / SCHEDULE_FILENAME, schedule.as_payload())
        return schedule

    def delete_schedule(self, book_id: str) -> None:
        with self.lock:
            path = self._existing_book_dir(book_id) / SCHEDULE_FILENAME
            if not path.exists():
                raise ScheduleNotFoundError(book_id)
            path.unlink()

    def list_active_schedules(self, user_id: str) -> list[ReleaseSchedule]:
        schedules: list[ReleaseSchedule] = []
        with self.lock:
            for book in self._iter_books():
                if book.user_id != user_id:
                    continue
                schedule = self.get_schedule(book.id)
                if schedule is not None and schedule.is_active:
                    schedules.append(schedule)
        return schedules

    # Releases

    def _load_releases(self, book_dir: Path) -> list[Release]:
        raw = _read_json(book_dir / RELEASES_FILENAME, [])
        if not isinstance(raw, list):
            return []
        return [Release.from_payload(item) for item in raw if isinstance(item, dict) and "id" in item]

    def _save_releases(self, book_dir: Path, releases: list[Release]) -> None:
        _write_json(book_dir / RELEASES_FILENAME, [release.as_payload() for release in releases])

    def list_releases(self, book_id: str) -> list[Release]:
        with self.lock:
            releases = self._load_releases(self._existing_book_dir(book_id))
        releases.sort(key=lambda release: release.scheduled_for)
        return releases

    def get_release(self, release_id: str) -> Release:
        with self.lock:
            for entry in sorted(self.books_dir.iterdir()):
                if not entry.is_dir():
                    continue
                for release in self._load_releases(entry):
                    if release.id == release_id:
                        return release
        raise ReleaseNotFoundError(release_id)

    def insert_release(self, release: Release) -> Release | None:
        """Insert ``release`` unless its instant or any of its sections is taken."""
        with self.lock:
            book_dir = self._existing_book_dir(release.book_id)
            releases = self._load_releases(book_dir)
            taken: set[str] = set()
            for existing in releases:
                if existing.scheduled_for == release.scheduled_for:
                    return None
                taken.update(existing.section_ids)
            if taken.intersection(release.section_ids):
                return None
            releases.append(release)
            self._save_releases(book_dir, releases)
        return release

    def update_release(self, release: Release) -> Release:
        with self.lock:
            book_dir = self._existing_book_dir(release.book_id)
            releases = self._load_releases(book_dir)
            for idx, existing in enumerate(releases):
                if existing.id == release.id:
                    releases[idx] = release
                    break
            else:
                raise ReleaseNotFoundError(release.id)
            self._save_releases(book_dir, releases)
        return release

    # Progress

    def _progress_path(self, user_id: str) -> Path:
        return self.progress_dir / f"{_user_key(user_id)}.json"

    def _load_progress(self, user_id: str) -> dict[str, dict[str, object]]:
        raw = _read_json(self._progress_path(user_id), {})
        if not isinstance(raw, dict):
            return {}
        return {key: value for key, value in raw.items() if isinstance(value, dict)}

    def upsert_progress(
        self,
        user_id: str,
        section_id: str,
        book_id: str,
        **fields: Any,
    ) -> ReadingProgress:
        with self.lock:
            entries = self._load_progress(user_id)
            payload = entries.get(section_id)
            if payload is not None:
                record = ReadingProgress.from_payload(payload)
            else:
                record = ReadingProgress(user_id=user_id, section_id=section_id, book_id=book_id)
            record.apply(**fields)
            entries[section_id] = record.as_payload()
            _write_json(self._progress_path(user_id), entries)
        return record

    def get_progress(self, user_id: str, section_id: str) -> ReadingProgress | None:
        with self.lock:
            payload = self._load_progress(user_id).get(section_id)
        return ReadingProgress.from_payload(payload) if payload is not None else None

    def list_progress(self, user_id: str, book_id: str | None = None) -> list[ReadingProgress]:
        with self.lock:
            entries = self._load_progress(user_id)
        records = [ReadingProgress.from_payload(payload) for payload in entries.values()]
        if book_id is not None:
            records = [record for record in records if record.book_id == book_id]
        return records

    # Settings

    def _load_settings(self) -> dict[str, dict[str, object]]:
        raw = _read_json(self.settings_path, {})
        if not isinstance(raw, dict):
            return {}
        return {key: value for key, value in raw.items() if isinstance(value, dict)}

    def get_settings(self, user_id: str) -> UserSettings | None:
        with self.lock:
            payload = self._load_settings().get(user_id)
        return UserSettings.from_payload(payload) if payload is not None else None

    def ensure_settings(self, user_id: str, factory: Callable[[], UserSettings]) -> UserSettings:
        with self.lock:
            existing = self.get_settings(user_id)
            if existing is not None:
                return existing
            return self.save_settings(factory())

    def save_settings(self, settings: UserSettings) -> UserSettings:
        with self.lock:
            entries = self._load_settings()
            entries[settings.user_id] = settings.as_payload()
            _write_json(self.settings_path, entries)
        return settings


__all__ = [
    "BookNotFoundError",
    "LibraryStore",
    "ReleaseNotFoundError",
    "ScheduleNotFoundError",
    "SectionNotFoundError",
    "Store",
]
