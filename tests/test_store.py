from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from epreader.epub import CoverImage
from epreader.models import Book, Release, ReleaseSchedule, Section, UserSettings
from epreader.store import (
    BookNotFoundError,
    LibraryStore,
    ReleaseNotFoundError,
    ScheduleNotFoundError,
    SectionNotFoundError,
)

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def _book(store: LibraryStore, user_id: str = "u1", title: str = "Book") -> Book:
    return store.create_book(Book(user_id=user_id, title=title))


def _sections(book_id: str, count: int) -> list[Section]:
    return [
        Section(
            book_id=book_id,
            chapter_number=1,
            section_number=idx + 1,
            title=f"S{idx}",
            content=f"<p>{idx}</p>",
            word_count=1,
            estimated_read_minutes=1,
            order_index=idx,
        )
        for idx in range(count)
    ]


def test_book_round_trip_and_listing(store: LibraryStore) -> None:
    older = Book(user_id="u1", title="Older", created_at=T0)
    newer = Book(user_id="u1", title="Newer", created_at=T0 + timedelta(days=1))
    store.create_book(older)
    store.create_book(newer)
    store.create_book(Book(user_id="u2", title="Other"))

    assert [book.title for book in store.list_books("u1")] == ["Newer", "Older"]
    loaded = store.get_book(older.id)
    assert loaded.title == "Older"
    assert loaded.created_at == T0
    with pytest.raises(BookNotFoundError):
        store.get_book("nope")
    with pytest.raises(BookNotFoundError):
        store.get_book("../escape")


def test_sections_are_ordered_and_found_by_id(store: LibraryStore) -> None:
    book = _book(store)
    sections = _sections(book.id, 3)
    store.insert_sections(book.id, list(reversed(sections)))
    assert [section.order_index for section in store.list_sections(book.id)] == [0, 1, 2]
    assert store.get_section(sections[1].id).title == "S1"
    with pytest.raises(SectionNotFoundError):
        store.get_section("missing")


def test_insert_release_rejects_duplicate_instants_and_overlaps(store: LibraryStore) -> None:
    book = _book(store)
    a, b, c = _sections(book.id, 3)
    store.insert_sections(book.id, [a, b, c])

    first = store.insert_release(Release(book.id, [a.id], scheduled_for=T0, status="released"))
    assert first is not None
    same_instant = Release(book.id, [b.id], scheduled_for=T0)
    overlapping = Release(book.id, [a.id, b.id], scheduled_for=T0 + timedelta(days=1))
    assert store.insert_release(same_instant) is None
    assert store.insert_release(overlapping) is None
    assert store.insert_release(Release(book.id, [b.id], scheduled_for=T0 + timedelta(days=1)))
    assert len(store.list_releases(book.id)) == 2


def test_update_and_get_release(store: LibraryStore) -> None:
    book = _book(store)
    release = store.insert_release(Release(book.id, ["s"], scheduled_for=T0))
    assert release is not None
    release.status = "read"
    store.update_release(release)
    assert store.get_release(release.id).status == "read"
    with pytest.raises(ReleaseNotFoundError):
        store.get_release("missing")
    with pytest.raises(ReleaseNotFoundError):
        store.update_release(Release(book.id, [], scheduled_for=T0))


def test_schedules(store: LibraryStore) -> None:
    book = _book(store)
    other = _book(store, user_id="u2")
    assert store.get_schedule(book.id) is None
    store.save_schedule(ReleaseSchedule(book_id=book.id, days_of_week=[1, 3]))
    store.save_schedule(ReleaseSchedule(book_id=other.id))
    assert store.get_schedule(book.id).days_of_week == [1, 3]
    assert [s.book_id for s in store.list_active_schedules("u1")] == [book.id]
    store.delete_schedule(book.id)
    assert store.get_schedule(book.id) is None
    with pytest.raises(ScheduleNotFoundError):
        store.delete_schedule(book.id)


def test_progress_upsert_keeps_read_flag(store: LibraryStore) -> None:
    book = _book(store)
    first = store.upsert_progress("u1", "s1", book.id, progress_percentage=40, now=T0)
    assert not first.is_read
    done = store.upsert_progress("u1", "s1", book.id, progress_percentage=100, now=T0)
    assert done.is_read
    assert done.read_at == T0
    later = T0 + timedelta(hours=1)
    back = store.upsert_progress("u1", "s1", book.id, progress_percentage=30, now=later)
    assert back.is_read
    assert back.progress_percentage == 30
    assert back.read_at == T0
    assert store.get_progress("u1", "s1").is_read
    assert store.get_progress("u2", "s1") is None


def test_delete_book_removes_files_and_progress(store: LibraryStore) -> None:
    book = _book(store)
    keep = _book(store, title="Keep")
    store.save_package(book.id, b"epub bytes")
    store.upsert_progress("u1", "s1", book.id, progress_percentage=10)
    store.upsert_progress("u1", "s2", keep.id, progress_percentage=10)

    store.delete_book(book.id)

    assert not (store.books_dir / book.id).exists()
    assert [record.section_id for record in store.list_progress("u1")] == ["s2"]
    with pytest.raises(BookNotFoundError):
        store.delete_book(book.id)


def test_package_and_cover_files(store: LibraryStore) -> None:
    book = _book(store)
    store.save_package(book.id, b"zip")
    assert store.read_package_bytes(book.id) == b"zip"

    filename = store.save_cover(book.id, CoverImage("OEBPS/img/front.JPG", "image/jpeg", b"jpg"))
    assert filename == "cover.jpg"
    assert store.cover_path(book.id) is None
    book.cover_image = filename
    store.update_book(book)
    assert store.cover_path(book.id).read_bytes() == b"jpg"


def test_settings(store: LibraryStore) -> None:
    created = store.ensure_settings("u1", lambda: UserSettings("u1", timezone="Europe/Berlin"))
    again = store.ensure_settings("u1", lambda: UserSettings("u1", timezone="UTC"))
    assert created.timezone == again.timezone == "Europe/Berlin"
    assert store.get_settings("u2") is None


def test_unreadable_json_is_ignored(store: LibraryStore) -> None:
    book = _book(store)
    (store.books_dir / book.id / "sections.json").write_text("{not json", encoding="utf-8")
    assert store.list_sections(book.id) == []


def test_json_documents_are_human_readable(store: LibraryStore) -> None:
    book = store.create_book(Book(user_id="u1", title="Café"))
    raw = (store.books_dir / book.id / "book.json").read_text(encoding="utf-8")
    assert "Café" in raw
    assert json.loads(raw)["title"] == "Café"
