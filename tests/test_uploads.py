from __future__ import annotations

import pytest

from epub_fixtures import build_epub, xhtml
from epreader.store import BookNotFoundError, LibraryStore
from epreader.uploads import ImportJob, UploadManager, validate_upload

MB = 1024 * 1024


@pytest.fixture
def manager(store: LibraryStore):
    manager = UploadManager(store, max_workers=1)
    yield manager
    manager.shutdown()


def test_validate_upload_accepts_epub_names() -> None:
    assert validate_upload("dir/My Book.EPUB", 10, MB) == "My Book.EPUB"
    assert validate_upload(None, 10, MB) == "upload.epub"


@pytest.mark.parametrize(
    ("filename", "size"),
    [
        ("notes.pdf", 10),
        ("book.epub", 0),
        ("book.epub", MB + 1),
    ],
)
def test_validate_upload_rejects(filename: str, size: int) -> None:
    with pytest.raises(ValueError):
        validate_upload(filename, size, MB)


def test_job_follows_unit_events() -> None:
    job = ImportJob(user_id="u1", filename="book.epub", book_id="b1", data=b"data")
    assert job.progress() is None

    job.record({"event": "unit_start", "index": 1, "total": 3, "title": " One ", "source": "a.xhtml"})
    assert job.progress() == {
        "units_done": 0,
        "units_total": 3,
        "current_unit": "One",
        "sections": 0,
    }
    job.record({"event": "unit_done", "index": 1, "total": 3, "sections": 2})
    job.record({"event": "unit_start", "index": 2, "total": 3, "title": "", "source": "OEBPS/two.xhtml"})
    progress = job.progress()
    assert progress["units_done"] == 1
    assert progress["sections"] == 2
    assert progress["current_unit"] == "two"


def test_manager_imports_book_in_background(manager: UploadManager, store: LibraryStore) -> None:
    documents = [
        ("a.xhtml", xhtml("<h1>Only</h1><p>text</p>")),
        ("b.xhtml", xhtml("<h1>Second</h1><p>more text</p>")),
    ]
    job = manager.submit("u1", "../a.epub", build_epub(documents))
    assert job.filename == "a.epub"
    assert store.get_book(job.book_id).source_name == "a.epub"

    finished = manager.wait(job.id, timeout=30)
    assert finished is job
    assert job.done.is_set()
    payload = manager.describe(job)
    assert payload["status"] == "ready", payload["error"]
    assert payload["progress"] == {
        "units_done": 2,
        "units_total": 2,
        "current_unit": "b",
        "sections": 2,
    }
    assert job.data == b""
    book = store.get_book(job.book_id)
    assert book.status == "ready"
    assert book.title == "Sample Book"
    assert [entry["id"] for entry in manager.list_jobs("u1")] == [job.id]
    assert manager.list_jobs("u2") == []


def test_manager_reports_parse_failures(manager: UploadManager, store: LibraryStore) -> None:
    job = manager.submit("u1", "broken.epub", b"not a zip")
    manager.wait(job.id, timeout=30)
    payload = manager.describe(job)
    assert payload["status"] == "error"
    assert payload["error"].startswith("Could not parse EPUB")
    with pytest.raises(BookNotFoundError):
        store.get_book(job.book_id)


def test_status_comes_from_the_book_record(manager: UploadManager, store: LibraryStore) -> None:
    job = manager.submit("u1", "a.epub", build_epub([("a.xhtml", xhtml("<p>text</p>"))]))
    manager.wait(job.id, timeout=30)
    assert manager.status(job) == "ready"
    store.delete_book(job.book_id)
    assert manager.status(job) == "error"
    assert manager.wait("missing") is None


def test_worker_count_is_clamped(store: LibraryStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EPREADER_UPLOAD_WORKERS", "64")
    manager = UploadManager(store, max_workers=1)
    try:
        assert manager.workers == 8
    finally:
        manager.shutdown()
    monkeypatch.setenv("EPREADER_UPLOAD_WORKERS", "many")
    manager = UploadManager(store, max_workers=3)
    try:
        assert manager.workers == 3
    finally:
        manager.shutdown()
