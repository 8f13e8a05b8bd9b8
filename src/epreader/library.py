from __future__ import annotations

import logging
from pathlib import Path

from .core import ParseFailure, ProgressCallback, extract_cover, parse_epub
from .models import BOOK_PROCESSING, BOOK_READY, BOOK_STATUSES, Book, Section, utc_now
from .progress import book_progress
from .releases import unread_release_count
from .settings import DEFAULT_TIMEZONE, ensure_settings
from .store import BookNotFoundError, Store

logger = logging.getLogger(__name__)


def _title_from_filename(filename: str | None) -> str:
    if not filename:
        return "Untitled"
    stem = Path(filename).stem.strip()
    return stem or "Untitled"


def create_pending_book(store: Store, user_id: str, filename: str | None = None) -> Book:
    book = Book(
        user_id=user_id,
        title=_title_from_filename(filename),
        status=BOOK_PROCESSING,
        source_name=Path(filename).name if filename else None,
    )
    return store.create_book(book)


def import_book(
    store: Store,
    user_id: str,
    data: bytes,
    filename: str | None = None,
    *,
    book: Book | None = None,
    progress: ProgressCallback | None = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> Book:
    """
    Store an uploaded EPUB and section it.

    The book is visible as ``processing`` while parsing runs and becomes
    ``ready`` once its sections are stored. If anything fails before that,
    the book is removed again and the error re-raised, so no book is left
    stuck in ``processing``. An unreadable cover only drops the cover.
    """
    if book is None:
        book = create_pending_book(store, user_id, filename)
    label = book.source_name or book.id
    try:
        ensure_settings(store, user_id, default_timezone)
        store.save_package(book.id, data)
        try:
            parsed = parse_epub(data, progress=progress)
        except ParseFailure:
            logger.warning("Discarding %s: EPUB could not be parsed", label)
            raise
        try:
            cover = extract_cover(data)
        except Exception as exc:
            logger.warning("Importing %s without a cover: %s", label, exc)
            cover = None
        if cover is not None:
            book.cover_image = store.save_cover(book.id, cover)
        sections = [
            Section(
                book_id=book.id,
                chapter_number=parsed_section.chapter_number,
                section_number=parsed_section.section_number,
                title=parsed_section.title,
                content=parsed_section.content,
                word_count=parsed_section.word_count,
                estimated_read_minutes=parsed_section.estimated_read_minutes,
                order_index=parsed_section.order_index,
                header_level=parsed_section.header_level,
            )
            for parsed_section in parsed.sections
        ]
        store.insert_sections(book.id, sections)
        book.title = parsed.title
        book.author = parsed.author
        book.total_chapters = parsed.total_chapters
        book.total_sections = parsed.total_sections
        book.status = BOOK_READY
        book.updated_at = utc_now()
        store.update_book(book)
    except Exception:
        logger.debug("Removing unfinished import %s", label)
        try:
            store.delete_book(book.id)
        except BookNotFoundError:
            pass
        raise
    logger.info(
        "Imported %s: %d chapters, %d sections",
        book.title,
        book.total_chapters,
        book.total_sections,
    )
    return book


def owned_book(store: Store, user_id: str, book_id: str) -> Book:
    book = store.get_book(book_id)
    if book.user_id != user_id:
        raise BookNotFoundError(book_id)
    return book


def list_books(store: Store, user_id: str) -> list[dict[str, object]]:
    payloads: list[dict[str, object]] = []
    for book in store.list_books(user_id):
        payload = book.as_payload()
        payload["progress"] = book_progress(store, user_id, book.id).as_payload()
        payloads.append(payload)
    return payloads


def get_book_detail(store: Store, user_id: str, book_id: str) -> dict[str, object]:
    book = owned_book(store, user_id, book_id)
    schedule = store.get_schedule(book_id)
    payload = book.as_payload()
    payload["schedule"] = schedule.as_payload() if schedule else None
    payload["sections"] = [
        section.as_payload(include_content=False) for section in store.list_sections(book_id)
    ]
    payload["progress"] = book_progress(store, user_id, book_id).as_payload()
    payload["unread_releases"] = unread_release_count(store, book_id)
    return payload


def delete_book(store: Store, user_id: str, book_id: str) -> None:
    owned_book(store, user_id, book_id)
    store.delete_book(book_id)
    logger.info("Deleted book %s", book_id)


def update_book_status(store: Store, user_id: str, book_id: str, status: str) -> Book:
    if status not in BOOK_STATUSES:
        raise ValueError(f"Unknown book status: {status!r}")
    book = owned_book(store, user_id, book_id)
    book.status = status
    book.updated_at = utc_now()
    return store.update_book(book)


__all__ = [
    "create_pending_book",
    "delete_book",
    "get_book_detail",
    "import_book",
    "list_books",
    "owned_book",
    "update_book_status",
]
