from __future__ import annotations

import io
import logging
import re
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, field
from functools import partial
from pathlib import PurePosixPath
from typing import BinaryIO, Callable
from urllib.parse import unquote

from bs4 import Tag  # type: ignore

from .markup import soup_from_html
from .sections import MAX_HEADER_LEVEL, DocumentIndex

logger = logging.getLogger(__name__)

HTML_EXTS = (".xhtml", ".html", ".htm")
HTML_MEDIA_TYPES = {"application/xhtml+xml", "text/html"}
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
DC_NS = "http://purl.org/dc/elements/1.1/"
CONTAINER_NS = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}

_DECLARED_ENCODING = re.compile(rb"""(?:encoding|charset)\s*=\s*["']?([A-Za-z0-9_.:-]+)""")


class ParseFailure(RuntimeError):
    """Raised when an EPUB container cannot be opened or its package read."""


# Content sources, in the order they are tried for an item.


@dataclass(frozen=True, slots=True)
class InlineText:
    text: str


@dataclass(frozen=True, slots=True)
class ReadAccessor:
    read: Callable[[], str | bytes]


@dataclass(frozen=True, slots=True)
class FileAccessor:
    open: Callable[[], BinaryIO]


@dataclass(frozen=True, slots=True)
class ByteBuffer:
    data: bytes


ContentSource = InlineText | ReadAccessor | FileAccessor | ByteBuffer
_SOURCE_PRIORITY = (InlineText, ReadAccessor, FileAccessor, ByteBuffer)


@dataclass(slots=True)
class PackageItem:
    id: str
    path: str
    media_type: str | None = None
    properties: str = ""
    sources: tuple[ContentSource, ...] = ()

    @property
    def is_document(self) -> bool:
        media_type = (self.media_type or "").lower()
        return media_type in HTML_MEDIA_TYPES or self.path.lower().endswith(HTML_EXTS)


@dataclass(slots=True)
class NavEntry:
    path: str
    fragment: str | None
    title: str
    depth: int


@dataclass(slots=True)
class ContentUnit:
    raw_content: str
    level: int
    title: str | None
    source: str


@dataclass(slots=True)
class CoverImage:
    path: str
    media_type: str | None
    data: bytes


@dataclass(slots=True)
class PackageMetadata:
    title: str
    author: str | None = None
    cover_path: str | None = None
    cover_media_type: str | None = None


@dataclass(slots=True)
class ExtractionReport:
    units: list[ContentUnit] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    used_navigation: bool = False


def decode_markup(raw: bytes) -> str:
    if raw.startswith(b"\xef\xbb\xbf"):
        return raw[3:].decode("utf-8", errors="replace")
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16", errors="replace")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        pass
    match = _DECLARED_ENCODING.search(raw[:1024])
    candidates = [match.group(1).decode("ascii")] if match else []
    candidates.extend(["cp1252", "latin-1"])
    for enc in candidates:
        try:
            return raw.decode(enc)
        except (LookupError, UnicodeDecodeError):
            continue
    return raw.decode("utf-8", errors="ignore")


def _source_text(source: ContentSource) -> str | None:
    if isinstance(source, InlineText):
        return source.text
    if isinstance(source, ReadAccessor):
        result = source.read()
        if isinstance(result, bytes):
            return decode_markup(result)
        return result
    if isinstance(source, FileAccessor):
        with source.open() as handle:
            return decode_markup(handle.read())
    if isinstance(source, ByteBuffer):
        return decode_markup(source.data)
    return None


def read_item_text(item: PackageItem) -> str | None:
    """Return the first non-empty markup any of ``item``'s sources yields."""
    ordered = sorted(
        item.sources,
        key=lambda source: _SOURCE_PRIORITY.index(type(source)),
    )
    for source in ordered:
        try:
            text = _source_text(source)
        except Exception as exc:
            logger.debug(
                "%s via %s failed: %s", item.path, type(source).__name__, exc
            )
            continue
        if text and text.strip():
            return text
    logger.warning("Could not extract content from %s; skipping", item.path)
    return None


def _strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _get_attr(elem: ET.Element, name: str) -> str | None:
    for attr, value in elem.attrib.items():
        if _strip_tag(attr) == name:
            return value
    return None


def _children(elem: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in elem if _strip_tag(child.tag) == name]


def _find_first(elem: ET.Element, name: str) -> ET.Element | None:
    for node in elem.iter():
        if _strip_tag(node.tag) == name:
            return node
    return None


def _resolve_relative_path(base_file: str, href: str) -> str:
    href = unquote(href)
    base = str(PurePosixPath(base_file).parent)
    if base not in ("", ".", "/"):
        combined = PurePosixPath(base) / href
    else:
        combined = PurePosixPath(href)
    parts: list[str] = []
    for part in combined.parts:
        if part == "..":
            if parts:
                parts.pop()
        elif part not in (".", ""):
            parts.append(part)
    return "/".join(parts)


def _split_href_fragment(href: str) -> tuple[str, str | None]:
    if "#" in href:
        base, frag = href.split("#", 1)
        return base, unquote(frag) or None
    return href, None


def _parse_nav_document(html: str) -> list[tuple[str, str, int]]:
    soup = soup_from_html(html)
    nav_tags = []
    for nav in soup.find_all("nav"):
        nav_type = (nav.get("epub:type") or "").lower()
        role = (nav.get("role") or "").lower()
        if "toc" in nav_type or role == "doc-toc":
            nav_tags.append(nav)
    if not nav_tags:
        nav_tags = soup.find_all("nav")[:1]
    entries: list[tuple[str, str, int]] = []
    for nav in nav_tags:
        for anchor in nav.find_all("a"):
            href = anchor.get("href")
            if not href:
                continue
            depth = 0
            for parent in anchor.parents:
                if parent is nav:
                    break
                if parent.name == "li":
                    depth += 1
            entries.append((href, anchor.get_text(" ", strip=True), max(depth, 1)))
    return entries


def _parse_ncx_document(xml_text: str) -> list[tuple[str, str, int]]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return []

    def _collect_points(elem: ET.Element, depth: int, acc: list[tuple[str, str, int]]) -> None:
        for nav_point in _children(elem, "navPoint"):
            content_elem = _children(nav_point, "content")
            href = content_elem[0].attrib.get("src") if content_elem else None
            if href:
                label_elem = _find_first(nav_point, "text")
                text = ""
                if label_elem is not None:
                    text = " ".join("".join(label_elem.itertext()).split())
                acc.append((href, text, depth))
            _collect_points(nav_point, depth + 1, acc)

    entries: list[tuple[str, str, int]] = []
    nav_map = _find_first(root, "navMap")
    if nav_map is None:
        return entries
    _collect_points(nav_map, 1, entries)
    return entries


class EpubPackage:
    """
    Read-only view over an EPUB container held in memory.

    Opening resolves the OPF package (manifest, spine and metadata); anything
    that prevents that raises :class:`ParseFailure`. Individual content
    documents are read lazily and may fail on their own.
    """

    def __init__(self, data: bytes) -> None:
        try:
            self._zf = zipfile.ZipFile(io.BytesIO(data), "r")
        except (zipfile.BadZipFile, OSError, ValueError) as exc:
            raise ParseFailure(f"Not a readable EPUB container: {exc}") from exc
        try:
            self._names = set(self._zf.namelist())
            self.opf_path = self._find_opf_path()
            self._opf_root = ET.fromstring(self._read_text(self.opf_path))
        except ParseFailure:
            self.close()
            raise
        except Exception as exc:
            self.close()
            raise ParseFailure(f"Unreadable OPF package: {exc}") from exc
        self.manifest = self._load_manifest()
        self.spine = self._load_spine()

    def __enter__(self) -> EpubPackage:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._zf.close()

    def _read_text(self, name: str) -> str:
        return decode_markup(self._zf.read(name))

    def _find_opf_path(self) -> str:
        # META-INF/container.xml -> rootfiles/rootfile@full-path
        if "META-INF/container.xml" in self._names:
            try:
                root = ET.fromstring(self._read_text("META-INF/container.xml"))
            except ET.ParseError:
                root = None
            if root is not None:
                for rf in root.findall(".//c:rootfile", CONTAINER_NS):
                    full = rf.attrib.get("full-path")
                    if full and full in self._names:
                        return full
        for name in sorted(self._names):
            if name.lower().endswith(".opf"):
                return name
        raise ParseFailure("OPF package document not found in EPUB")

    def _locate(self, path: str) -> str | None:
        if path in self._names:
            return path
        # Some packages use inconsistent relative paths; match on the tail.
        candidates = sorted(n for n in self._names if n.endswith("/" + path) or path.endswith("/" + n))
        return candidates[0] if candidates else None

    def _load_manifest(self) -> dict[str, PackageItem]:
        manifest: dict[str, PackageItem] = {}
        manifest_elem = _find_first(self._opf_root, "manifest")
        if manifest_elem is None:
            return manifest
        for item in _children(manifest_elem, "item"):
            item_id = _get_attr(item, "id")
            href = _get_attr(item, "href")
            if not item_id or not href:
                continue
            resolved = _resolve_relative_path(self.opf_path, _split_href_fragment(href)[0])
            located = self._locate(resolved) or resolved
            manifest[item_id] = PackageItem(
                id=item_id,
                path=located,
                media_type=_get_attr(item, "media-type"),
                properties=(_get_attr(item, "properties") or "").lower(),
                sources=(
                    ReadAccessor(partial(self._zf.read, located)),
                    FileAccessor(partial(self._zf.open, located, "r")),
                ),
            )
        return manifest

    def _load_spine(self) -> list[PackageItem]:
        spine_elem = _find_first(self._opf_root, "spine")
        items: list[PackageItem] = []
        seen: set[str] = set()
        if spine_elem is not None:
            for ref in _children(spine_elem, "itemref"):
                item = self.manifest.get(_get_attr(ref, "idref") or "")
                if item is None or item.path in seen or not item.is_document:
                    continue
                seen.add(item.path)
                items.append(item)
        if not items:
            items = [item for item in self.manifest.values() if item.is_document]
        return items

    def item_for_path(self, path: str) -> PackageItem | None:
        for item in self.manifest.values():
            if item.path == path:
                return item
        return None

    def metadata(self) -> PackageMetadata:
        title = "Untitled"
        for title_el in self._opf_root.iter(f"{{{DC_NS}}}title"):
            text = " ".join("".join(title_el.itertext()).split())
            if text:
                title = text
                break
        cover = self._cover_item()
        return PackageMetadata(
            title=title,
            author=self._author(),
            cover_path=cover.path if cover else None,
            cover_media_type=cover.media_type if cover else None,
        )

    def _author(self) -> str | None:
        fallback: str | None = None
        for creator_el in self._opf_root.iter(f"{{{DC_NS}}}creator"):
            name = " ".join("".join(creator_el.itertext()).split())
            if not name:
                continue
            role = (_get_attr(creator_el, "role") or "").lower()
            if role in {"aut", "author"}:
                return name
            if fallback is None and not role:
                fallback = name
        return fallback

    def _cover_item(self) -> PackageItem | None:
        candidates: list[PackageItem] = []
        for elem in self._opf_root.iter():
            if _strip_tag(elem.tag) != "meta":
                continue
            name = _get_attr(elem, "name")
            content = _get_attr(elem, "content")
            if name and name.lower() == "cover" and content:
                item = self.manifest.get(content.strip())
                if item is not None:
                    candidates.append(item)
                break
        for item in self.manifest.values():
            if "cover-image" in item.properties:
                candidates.append(item)
        for item_id, item in self.manifest.items():
            if "cover" in item_id.lower() or "cover" in item.path.lower():
                candidates.append(item)
        for item in candidates:
            media_type = (item.media_type or "").lower()
            if media_type.startswith("image/") and item.path in self._names:
                return item
        return None

    def cover_image(self) -> CoverImage | None:
        item = self._cover_item()
        if item is None:
            return None
        try:
            data = self._zf.read(item.path)
        except Exception as exc:
            logger.warning("Ignoring unreadable cover %s: %s", item.path, exc)
            return None
        return CoverImage(path=item.path, media_type=item.media_type, data=data)

    def navigation(self) -> list[NavEntry]:
        """Table of contents entries, EPUB 3 nav document first, then NCX."""
        nav_docs = [item for item in self.manifest.values() if "nav" in item.properties.split()]
        ncx_docs = [
            item
            for item in self.manifest.values()
            if (item.media_type or "").lower() == NCX_MEDIA_TYPE
        ]
        sources = [(item, _parse_nav_document) for item in nav_docs]
        sources.extend((item, _parse_ncx_document) for item in ncx_docs)
        for item, parser in sources:
            text = read_item_text(item)
            if not text:
                continue
            raw_entries = parser(text)
            entries: list[NavEntry] = []
            for href, title, depth in raw_entries:
                base_href, fragment = _split_href_fragment(href)
                if base_href:
                    resolved = _resolve_relative_path(item.path, base_href)
                    path = self._locate(resolved) or resolved
                else:
                    path = item.path
                entries.append(
                    NavEntry(
                        path=path,
                        fragment=fragment,
                        title=title,
                        depth=min(depth, MAX_HEADER_LEVEL),
                    )
                )
            if entries:
                return entries
        return []


def _split_at_anchors(text: str, entries: list[NavEntry]) -> list[str]:
    """Cut one document into the pieces its TOC entries point at."""
    if len(entries) == 1 and entries[0].fragment is None:
        return [text]
    index = DocumentIndex.from_html(text)
    positions: list[int] = []
    for entry in entries:
        target = None
        if entry.fragment:
            target = index.root.find(id=entry.fragment)
            if target is None:
                target = index.root.find(attrs={"name": entry.fragment})
        positions.append(index.position(target) if isinstance(target, Tag) else 1)
    ordered = sorted(range(len(entries)), key=lambda idx: (positions[idx], idx))
    pieces = [""] * len(entries)
    claimed: set[int] = set()
    for rank, entry_idx in enumerate(ordered):
        start = positions[entry_idx]
        if start in claimed:
            continue
        claimed.add(start)
        # The earliest piece also takes whatever precedes its anchor.
        lo = 0 if rank == 0 else start - 1
        hi = index.end + 1
        for later in ordered[rank + 1 :]:
            if positions[later] > start:
                hi = positions[later]
                break
        pieces[entry_idx] = index.html_between(lo, hi)
    return pieces


def _spine_units(package: EpubPackage, report: ExtractionReport) -> list[ContentUnit]:
    units: list[ContentUnit] = []
    for item in package.spine:
        text = read_item_text(item)
        if text is None:
            report.skipped.append(item.path)
            continue
        units.append(ContentUnit(raw_content=text, level=1, title=None, source=item.path))
    return units


def _navigation_units(
    package: EpubPackage,
    entries: list[NavEntry],
    report: ExtractionReport,
) -> list[ContentUnit]:
    spine_paths = [item.path for item in package.spine]
    spine_index = {path: idx for idx, path in enumerate(spine_paths)}
    by_path: dict[str, list[NavEntry]] = {}
    for entry in entries:
        item = package.item_for_path(entry.path)
        if item is None or not item.is_document:
            continue
        by_path.setdefault(entry.path, []).append(entry)
    if not by_path:
        return []

    pieces: dict[int, str] = {}
    for path, file_entries in by_path.items():
        item = package.item_for_path(path)
        text = read_item_text(item) if item is not None else None
        if text is None:
            report.skipped.append(path)
            continue
        for entry, piece in zip(file_entries, _split_at_anchors(text, file_entries)):
            pieces[id(entry)] = piece

    units: list[ContentUnit] = []
    emitted: set[str] = set()

    def _emit_spine_until(limit: int) -> None:
        for idx in range(limit):
            path = spine_paths[idx]
            if path in by_path or path in emitted:
                continue
            emitted.add(path)
            text = read_item_text(package.spine[idx])
            if text is None:
                report.skipped.append(path)
                continue
            units.append(ContentUnit(raw_content=text, level=1, title=None, source=path))

    for entry in entries:
        if id(entry) not in pieces:
            continue
        _emit_spine_until(spine_index.get(entry.path, 0))
        units.append(
            ContentUnit(
                raw_content=pieces[id(entry)],
                level=entry.depth,
                title=entry.title or None,
                source=entry.path,
            )
        )
    _emit_spine_until(len(spine_paths))
    return units


def extract_units(package: EpubPackage) -> ExtractionReport:
    """
    Content units of ``package`` in reading order.

    The table of contents decides order and nesting depth when it yields any
    content; spine documents it never points at are slotted in at their spine
    position. Without a usable table of contents the spine is used as is,
    every document at level 1.
    """
    report = ExtractionReport()
    entries = package.navigation()
    if entries:
        units = _navigation_units(package, entries, report)
        if any(unit.raw_content.strip() for unit in units):
            report.units = units
            report.used_navigation = True
            return report
        report.skipped.clear()
    report.units = _spine_units(package, report)
    return report


def extract_cover(data: bytes) -> CoverImage | None:
    with EpubPackage(data) as package:
        return package.cover_image()


__all__ = [
    "ByteBuffer",
    "ContentSource",
    "ContentUnit",
    "CoverImage",
    "EpubPackage",
    "ExtractionReport",
    "FileAccessor",
    "InlineText",
    "NavEntry",
    "PackageItem",
    "PackageMetadata",
    "ParseFailure",
    "ReadAccessor",
    "decode_markup",
    "extract_cover",
    "extract_units",
    "read_item_text",
]
