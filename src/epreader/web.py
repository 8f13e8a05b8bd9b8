from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from fastapi import Body, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from . import library, progress, releases, settings
from .store import LibraryStore
from .uploads import DEFAULT_MAX_UPLOAD_MB, UploadManager, validate_upload

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass(slots=True)
class WebConfig:
    root: Path
    max_upload_mb: int = DEFAULT_MAX_UPLOAD_MB
    upload_workers: int = 2
    default_timezone: str = settings.DEFAULT_TIMEZONE


def _max_upload_bytes(config: WebConfig) -> int:
    max_mb = config.max_upload_mb
    env_value = os.getenv("EPREADER_MAX_UPLOAD_MB")
    if env_value:
        try:
            parsed = int(env_value)
            if parsed > 0:
                max_mb = parsed
        except ValueError:
            logger.warning("Ignoring invalid EPREADER_MAX_UPLOAD_MB=%r", env_value)
    return max_mb * 1024 * 1024


@contextmanager
def _service_errors() -> Iterator[None]:
    try:
        yield
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=f"Not found: {exc}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _payload_dict(payload: object) -> dict[str, object]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload.")
    return payload


def create_app(config: WebConfig) -> FastAPI:
    root = config.root.expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    store = LibraryStore(root)
    max_upload_bytes = _max_upload_bytes(config)

    app = FastAPI(title="epreader")
    app.state.config = config
    app.state.root = root
    app.state.store = store
    upload_manager = UploadManager(
        store,
        max_workers=config.upload_workers,
        default_timezone=config.default_timezone,
    )
    app.state.upload_manager = upload_manager
    app.add_event_handler("shutdown", upload_manager.shutdown)

    def _owned_section(user_id: str, section_id: str):
        section = store.get_section(section_id)
        library.owned_book(store, user_id, section.book_id)
        return section

    # Uploads

    @app.post("/api/uploads")
    async def api_upload_epub(
        file: UploadFile = File(...),
        user_id: str = Form(...),
    ) -> JSONResponse:
        if not user_id.strip():
            raise HTTPException(status_code=400, detail="user_id is required.")
        chunks: list[bytes] = []
        size = 0
        try:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_upload_bytes:
                    break
                chunks.append(chunk)
        except Exception as exc:
            raise HTTPException(
                status_code=500, detail=f"Failed to read upload: {exc}"
            ) from exc
        finally:
            await file.close()
        with _service_errors():
            filename = validate_upload(file.filename, size, max_upload_bytes)
        job = upload_manager.submit(user_id.strip(), filename, b"".join(chunks))
        return JSONResponse({"job": upload_manager.describe(job)})

    @app.get("/api/uploads")
    def api_list_uploads(user_id: str | None = Query(None)) -> JSONResponse:
        return JSONResponse({"jobs": upload_manager.list_jobs(user_id)})

    @app.get("/api/uploads/{job_id}")
    def api_upload_status(job_id: str) -> JSONResponse:
        job = upload_manager.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Upload not found")
        return JSONResponse({"job": upload_manager.describe(job)})

    # Books

    @app.get("/api/books")
    def api_books(user_id: str = Query(...)) -> JSONResponse:
        return JSONResponse({"books": library.list_books(store, user_id)})

    @app.get("/api/books/{book_id}")
    def api_book_detail(book_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            detail = library.get_book_detail(store, user_id, book_id)
        return JSONResponse(detail)

    @app.delete("/api/books/{book_id}")
    def api_delete_book(book_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            library.delete_book(store, user_id, book_id)
        return JSONResponse({"success": True})

    @app.patch("/api/books/{book_id}/status")
    def api_book_status(
        book_id: str,
        user_id: str = Query(...),
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        data = _payload_dict(payload)
        status = data.get("status")
        if not isinstance(status, str):
            raise HTTPException(status_code=400, detail="status is required.")
        with _service_errors():
            book = library.update_book_status(store, user_id, book_id, status)
        return JSONResponse({"book": book.as_payload()})

    @app.get("/api/books/{book_id}/cover")
    def api_cover(book_id: str, user_id: str = Query(...)) -> FileResponse:
        with _service_errors():
            library.owned_book(store, user_id, book_id)
            cover_path = store.cover_path(book_id)
        if cover_path is None:
            raise HTTPException(status_code=404, detail="Cover not found")
        return FileResponse(cover_path)

    @app.get("/api/books/{book_id}/progress")
    def api_book_progress(book_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            library.owned_book(store, user_id, book_id)
            stats = progress.book_progress(store, user_id, book_id)
        return JSONResponse(stats.as_payload())

    # Schedules

    @app.get("/api/books/{book_id}/schedule")
    def api_get_schedule(book_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            library.owned_book(store, user_id, book_id)
            schedule = releases.get_schedule(store, book_id)
        return JSONResponse({"schedule": schedule.as_payload() if schedule else None})

    @app.post("/api/books/{book_id}/schedule")
    def api_create_schedule(
        book_id: str,
        user_id: str = Query(...),
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        data = _payload_dict(payload)
        with _service_errors():
            library.owned_book(store, user_id, book_id)
            schedule, release = releases.create_schedule(
                store,
                book_id,
                schedule_type=data.get("schedule_type", "daily"),  # type: ignore[arg-type]
                days_of_week=data.get("days_of_week"),  # type: ignore[arg-type]
                release_time=data.get("release_time", "09:00"),  # type: ignore[arg-type]
                sections_per_release=data.get("sections_per_release", 1),  # type: ignore[arg-type]
                release_now=bool(data.get("release_now", False)),
            )
        return JSONResponse(
            {
                "schedule": schedule.as_payload(),
                "release": release.as_payload() if release else None,
            }
        )

    @app.patch("/api/books/{book_id}/schedule")
    def api_update_schedule(
        book_id: str,
        user_id: str = Query(...),
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        data = _payload_dict(payload)
        allowed = {"schedule_type", "days_of_week", "release_time", "sections_per_release", "is_active"}
        unknown = set(data) - allowed
        if unknown:
            raise HTTPException(
                status_code=400, detail=f"Unknown fields: {', '.join(sorted(unknown))}"
            )
        with _service_errors():
            library.owned_book(store, user_id, book_id)
            schedule = releases.update_schedule(store, book_id, **data)
        return JSONResponse({"schedule": schedule.as_payload()})

    @app.delete("/api/books/{book_id}/schedule")
    def api_delete_schedule(book_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            library.owned_book(store, user_id, book_id)
            releases.delete_schedule(store, book_id)
        return JSONResponse({"success": True})

    # Releases

    @app.post("/api/releases/check")
    def api_check_releases(user_id: str = Query(...)) -> JSONResponse:
        outcomes = releases.check_and_create_releases(store, user_id)
        return JSONResponse(
            {
                "outcomes": [
                    {
                        "book_id": outcome.book_id,
                        "state": outcome.state,
                        "release": outcome.release.as_payload() if outcome.release else None,
                    }
                    for outcome in outcomes
                ]
            }
        )

    @app.get("/api/releases")
    def api_available_releases(user_id: str = Query(...)) -> JSONResponse:
        return JSONResponse({"releases": releases.available_releases(store, user_id)})

    @app.post("/api/releases/{release_id}/read")
    def api_mark_release_read(release_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            release = store.get_release(release_id)
            library.owned_book(store, user_id, release.book_id)
            release = releases.mark_release_read(store, release_id, user_id)
        return JSONResponse({"release": release.as_payload()})

    # Sections and progress

    @app.get("/api/sections/{section_id}")
    def api_section(section_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            _owned_section(user_id, section_id)
            payload = progress.get_section_progress(store, user_id, section_id)
        return JSONResponse(payload)

    @app.post("/api/sections/{section_id}/progress")
    def api_section_progress(
        section_id: str,
        user_id: str = Query(...),
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        data = _payload_dict(payload)
        release_id = data.get("release_id")
        if release_id is not None and not isinstance(release_id, str):
            raise HTTPException(status_code=400, detail="release_id must be a string.")
        with _service_errors():
            _owned_section(user_id, section_id)
            record = progress.update_progress(
                store,
                user_id,
                section_id,
                data.get("progress_percentage"),  # type: ignore[arg-type]
                data.get("last_paragraph_index", 0),  # type: ignore[arg-type]
                release_id=release_id,
            )
        return JSONResponse({"progress": record.as_payload()})

    @app.post("/api/sections/{section_id}/read")
    def api_section_read(section_id: str, user_id: str = Query(...)) -> JSONResponse:
        with _service_errors():
            _owned_section(user_id, section_id)
            record = progress.mark_section_read(store, user_id, section_id)
        return JSONResponse({"progress": record.as_payload()})

    # Settings

    @app.get("/api/settings")
    def api_get_settings(user_id: str = Query(...)) -> JSONResponse:
        current = settings.get_settings(store, user_id)
        return JSONResponse({"settings": current.as_payload() if current else None})

    @app.put("/api/settings")
    def api_update_settings(
        user_id: str = Query(...),
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        data = _payload_dict(payload)
        with _service_errors():
            updated = settings.update_settings(store, user_id, **data)
        return JSONResponse({"settings": updated.as_payload()})

    return app


__all__ = ["WebConfig", "create_app"]
