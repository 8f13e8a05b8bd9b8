from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from .epub import ContentUnit, CoverImage, EpubPackage, ParseFailure, extract_cover, extract_units
from .markup import count_words, estimate_read_minutes, has_readable_content, sanitize_html
from .sections import (
    LONG_SECTION_WORDS,
    DocumentIndex,
    RawSection,
    locate_headers,
    split_by_headers,
    subdivide_long_section,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Mapping[str, object]], None]


@dataclass
class ParsedSection:
    title: str
    content: str
    word_count: int
    estimated_read_minutes: int
    chapter_number: int
    section_number: int
    order_index: int
    header_level: int

    def as_payload(self) -> dict[str, object]:
        return {
            "title": self.title,
            "content": self.content,
            "word_count": self.word_count,
            "estimated_read_minutes": self.estimated_read_minutes,
            "chapter_number": self.chapter_number,
            "section_number": self.section_number,
            "order_index": self.order_index,
            "header_level": self.header_level,
        }


@dataclass
class ParsedBook:
    title: str
    author: str | None
    cover_image: str | None
    sections: list[ParsedSection]
    total_chapters: int
    total_sections: int
    skipped: list[str] = field(default_factory=list)

    def as_payload(self, include_content: bool = True) -> dict[str, object]:
        sections: list[dict[str, object]] = []
        for section in self.sections:
            payload = section.as_payload()
            if not include_content:
                payload.pop("content", None)
            sections.append(payload)
        return {
            "title": self.title,
            "author": self.author,
            "cover_image": self.cover_image,
            "total_chapters": self.total_chapters,
            "total_sections": self.total_sections,
            "skipped": list(self.skipped),
            "sections": sections,
        }


def _split_unit(content: str, fallback_title: str, level: int) -> list[RawSection]:
    index = DocumentIndex.from_html(content)
    headers = locate_headers(index)
    if not headers:
        return [RawSection(title=fallback_title, content=content, header_level=level)]
    expanded: list[RawSection] = []
    for section in split_by_headers(index, headers):
        if count_words(section.content) > LONG_SECTION_WORDS:
            expanded.extend(
                subdivide_long_section(section.title, section.content, section.header_level)
            )
        else:
            expanded.append(section)
    return expanded


def _emit(
    progress: ProgressCallback | None,
    event: str,
    **fields: object,
) -> None:
    if progress is None:
        return
    payload: dict[str, object] = {"event": event}
    payload.update(fields)
    try:
        progress(payload)
    except Exception:
        logger.debug("Progress callback failed for %s", event, exc_info=True)


def assemble_sections(
    units: list[ContentUnit],
    *,
    skipped: list[str] | None = None,
    progress: ProgressCallback | None = None,
) -> list[ParsedSection]:
    """
    Turn extracted content units into numbered sections.

    A unit without h1..h3 headings becomes a single section named after its
    TOC entry (or ``Chapter N``). Otherwise the unit is split at its headings
    and any piece over the long-section threshold is subdivided. A heading
    whose range holds no text still yields a section with an empty body. Chapter
    numbers advance once per top-level unit that produced content; order
    indices run 0..n-1 over the whole book.
    """
    sections: list[ParsedSection] = []
    chapter_number = 0
    section_number = 0
    total = len(units)
    for unit_index, unit in enumerate(units, start=1):
        _emit(
            progress,
            "unit_start",
            index=unit_index,
            total=total,
            title=unit.title,
            source=unit.source,
        )
        try:
            sanitized = sanitize_html(unit.raw_content)
            if not has_readable_content(sanitized):
                logger.debug("Dropping empty unit from %s", unit.source)
                continue
            if unit.level <= 1 or chapter_number == 0:
                next_chapter = chapter_number + 1
            else:
                next_chapter = chapter_number
            fallback = unit.title or f"Chapter {next_chapter}"
            pieces: list[RawSection] = []
            for raw in _split_unit(sanitized, fallback, unit.level):
                content = sanitize_html(raw.content)
                # A heading with an empty range still marks a section.
                if raw.title or has_readable_content(content):
                    pieces.append(
                        RawSection(title=raw.title, content=content, header_level=raw.header_level)
                    )
        except Exception as exc:
            logger.warning("Skipping %s: %s", unit.source, exc)
            if skipped is not None:
                skipped.append(unit.source)
            continue
        if not pieces:
            continue
        if next_chapter != chapter_number:
            chapter_number = next_chapter
            section_number = 0
        for piece in pieces:
            section_number += 1
            word_count = count_words(piece.content)
            sections.append(
                ParsedSection(
                    title=piece.title,
                    content=piece.content,
                    word_count=word_count,
                    estimated_read_minutes=estimate_read_minutes(word_count),
                    chapter_number=chapter_number,
                    section_number=section_number,
                    order_index=len(sections),
                    header_level=piece.header_level,
                )
            )
        _emit(
            progress,
            "unit_done",
            index=unit_index,
            total=total,
            title=unit.title,
            source=unit.source,
            sections=len(sections),
        )
    return sections


def parse_epub(data: bytes, progress: ProgressCallback | None = None) -> ParsedBook:
    """
    Parse EPUB container bytes into an ordered list of sections.

    Raises :class:`ParseFailure` when the container or its package document
    cannot be read. Problems with individual content documents are logged
    and reported in ``ParsedBook.skipped``.
    """
    with EpubPackage(data) as package:
        metadata = package.metadata()
        report = extract_units(package)
        _emit(progress, "book_start", total=len(report.units), title=metadata.title)
        skipped = list(report.skipped)
        sections = assemble_sections(report.units, skipped=skipped, progress=progress)
    if not sections:
        logger.warning("No readable sections found in %s", metadata.title)
    _emit(progress, "book_done", total=len(sections), title=metadata.title)
    return ParsedBook(
        title=metadata.title,
        author=metadata.author,
        cover_image=metadata.cover_path,
        sections=sections,
        total_chapters=len({section.chapter_number for section in sections}),
        total_sections=len(sections),
        skipped=skipped,
    )


def parse_epub_file(path: str | Path, progress: ProgressCallback | None = None) -> ParsedBook:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ParseFailure(f"Could not read {path}: {exc}") from exc
    return parse_epub(data, progress=progress)


__all__ = [
    "CoverImage",
    "ParseFailure",
    "ParsedBook",
    "ParsedSection",
    "assemble_sections",
    "extract_cover",
    "parse_epub",
    "parse_epub_file",
]
