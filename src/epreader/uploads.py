from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Mapping
from uuid import uuid4

from .core import ParseFailure
from .library import create_pending_book, import_book
from .models import BOOK_PROCESSING, utc_now
from .settings import DEFAULT_TIMEZONE
from .store import BookNotFoundError, Store

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_MB = 50
MAX_UPLOAD_WORKERS = 8

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_READY = "ready"
JOB_FAILED = "error"


def _normalize_upload_filename(filename: str | None) -> str:
    candidate = Path(filename).name.strip() if isinstance(filename, str) else ""
    return candidate or "upload.epub"


def validate_upload(filename: str | None, size: int, max_bytes: int) -> str:
    """Return the cleaned filename or raise ``ValueError`` for unacceptable uploads."""
    name = _normalize_upload_filename(filename)
    if not name.lower().endswith(".epub"):
        raise ValueError("Only EPUB files are allowed")
    if size <= 0:
        raise ValueError("Uploaded file is empty")
    if size > max_bytes:
        raise ValueError(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB")
    return name


@dataclass(slots=True)
class ImportJob:
    """
    One uploaded EPUB being sectioned in the background.

    The job itself only remembers how far the sectioner got; whether the book
    is still processing, ready or gone is read from the book record.
    """

    user_id: str
    filename: str
    book_id: str
    data: bytes = field(repr=False)
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)
    units_total: int | None = None
    units_done: int = 0
    current_unit: str | None = None
    sections: int = 0
    error: str | None = None
    started: bool = False
    done: threading.Event = field(default_factory=threading.Event, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, event: Mapping[str, object]) -> None:
        """Fold a sectioner progress event into the job."""
        total = event.get("total")
        index = event.get("index")
        with self.lock:
            if isinstance(total, int) and total > 0:
                self.units_total = total
            kind = event.get("event")
            if kind == "unit_start":
                title = event.get("title")
                source = event.get("source")
                if isinstance(title, str) and title.strip():
                    self.current_unit = title.strip()
                elif isinstance(source, str):
                    self.current_unit = Path(source).stem
            elif kind == "unit_done":
                if isinstance(index, int):
                    self.units_done = index
                sections = event.get("sections")
                if isinstance(sections, int):
                    self.sections = sections

    def progress(self) -> dict[str, object] | None:
        with self.lock:
            if self.units_total is None:
                return None
            return {
                "units_done": self.units_done,
                "units_total": self.units_total,
                "current_unit": self.current_unit,
                "sections": self.sections,
            }


class UploadManager:
    """Runs EPUB imports on a thread pool so requests return immediately."""

    def __init__(
        self,
        store: Store,
        max_workers: int = 2,
        default_timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self.store = store
        self.default_timezone = default_timezone
        self.lock = threading.Lock()
        self.workers = _worker_count(max_workers)
        self.executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="epreader-upload"
        )
        self.jobs: dict[str, ImportJob] = {}

    def submit(self, user_id: str, filename: str | None, data: bytes) -> ImportJob:
        # The book exists before parsing starts so clients can show it as processing.
        name = _normalize_upload_filename(filename)
        book = create_pending_book(self.store, user_id, name)
        job = ImportJob(user_id=user_id, filename=name, book_id=book.id, data=data)
        with self.lock:
            self.jobs[job.id] = job
        self.executor.submit(self._run, job)
        return job

    def get_job(self, job_id: str) -> ImportJob | None:
        with self.lock:
            return self.jobs.get(job_id)

    def status(self, job: ImportJob) -> str:
        if job.error:
            return JOB_FAILED
        try:
            book = self.store.get_book(job.book_id)
        except BookNotFoundError:
            return JOB_FAILED
        if book.status != BOOK_PROCESSING:
            return JOB_READY
        return JOB_PROCESSING if job.started else JOB_QUEUED

    def describe(self, job: ImportJob) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": job.id,
            "user_id": job.user_id,
            "filename": job.filename,
            "book_id": job.book_id,
            "status": self.status(job),
            "error": job.error,
            "progress": job.progress(),
            "created": job.created_at.isoformat(),
        }
        return payload

    def list_jobs(self, user_id: str | None = None) -> list[dict[str, object]]:
        with self.lock:
            snapshot = list(self.jobs.values())
        if user_id is not None:
            snapshot = [job for job in snapshot if job.user_id == user_id]
        snapshot.sort(key=lambda job: job.created_at, reverse=True)
        return [self.describe(job) for job in snapshot]

    def wait(self, job_id: str, timeout: float = 30.0) -> ImportJob | None:
        """Block until ``job_id`` has finished or ``timeout`` seconds pass."""
        job = self.get_job(job_id)
        if job is not None:
            job.done.wait(timeout)
        return job

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=False)

    def _run(self, job: ImportJob) -> None:
        job.started = True
        try:
            book = self.store.get_book(job.book_id)
            imported = import_book(
                self.store,
                job.user_id,
                job.data,
                job.filename,
                book=book,
                progress=job.record,
                default_timezone=self.default_timezone,
            )
            logger.debug("Upload %s ready with %d sections", job.id, imported.total_sections)
        except ParseFailure as exc:
            job.error = f"Could not parse EPUB: {exc}"
        except Exception as exc:
            logger.exception("Upload %s failed", job.id)
            job.error = f"{exc.__class__.__name__}: {exc}"
        finally:
            job.data = b""
            job.done.set()


def _worker_count(requested: int) -> int:
    workers = requested
    env_workers = os.getenv("EPREADER_UPLOAD_WORKERS")
    if env_workers:
        try:
            parsed = int(env_workers)
        except ValueError:
            logger.warning("Ignoring EPREADER_UPLOAD_WORKERS=%r", env_workers)
        else:
            if parsed > 0:
                workers = parsed
    return max(1, min(workers, MAX_UPLOAD_WORKERS))


__all__ = [
    "DEFAULT_MAX_UPLOAD_MB",
    "ImportJob",
    "UploadManager",
    "validate_upload",
]
