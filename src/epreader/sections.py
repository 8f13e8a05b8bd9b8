from __future__ import annotations

import copy
from dataclasses import dataclass

from bs4 import (  # type: ignore
    BeautifulSoup,
    CData,
    Comment,
    Declaration,
    Doctype,
    NavigableString,
    ProcessingInstruction,
    Tag,
)

from .markup import content_root, count_words, soup_from_html

MAX_HEADER_LEVEL = 3
LONG_SECTION_WORDS = 2000
HEADER_TAGS = {f"h{level}": level for level in range(1, MAX_HEADER_LEVEL + 1)}

_SKIPPED_NODE_TYPES = (Doctype, Declaration, ProcessingInstruction, Comment, CData)


@dataclass(slots=True)
class HeaderRef:
    level: int
    text: str
    node: Tag
    position: int


@dataclass(slots=True)
class RawSection:
    title: str
    content: str
    header_level: int


class DocumentIndex:
    """
    Pre-order positions for every node below ``root``.

    ``root`` itself sits at position 0. ``last(node)`` is the position of the
    final node inside ``node``'s subtree, so ``position(a) < position(b)``
    decides document order and ``position(a) <= position(b) <= last(a)``
    decides containment.
    """

    def __init__(self, soup: BeautifulSoup, root: Tag) -> None:
        self.soup = soup
        self.root = root
        self._nodes = list(root.descendants)
        self._first: dict[int, int] = {id(root): 0}
        self._last: dict[int, int] = {}
        for position, node in enumerate(self._nodes, start=1):
            self._first[id(node)] = position
        for node in reversed(self._nodes):
            end = self._first[id(node)]
            if isinstance(node, Tag) and node.contents:
                end = self._last[id(node.contents[-1])]
            self._last[id(node)] = end
        self._last[id(root)] = len(self._nodes)

    @classmethod
    def from_html(cls, html: str) -> DocumentIndex:
        soup = soup_from_html(html)
        return cls(soup, content_root(soup))

    @property
    def end(self) -> int:
        return len(self._nodes)

    def position(self, node: object) -> int:
        return self._first[id(node)]

    def last(self, node: object) -> int:
        return self._last[id(node)]

    def compare(self, a: object, b: object) -> int:
        return self.position(a) - self.position(b)

    def html_between(self, lo: int, hi: int) -> str:
        """Serialize every node positioned strictly between ``lo`` and ``hi``.

        Elements that straddle a boundary are re-emitted as empty shells
        around the part of their content that falls inside the range.
        """
        pieces: list[object] = []
        for child in self.root.contents:
            pieces.extend(self._clip(child, lo, hi))
        return "".join(_serialize(piece) for piece in pieces)

    def _clip(self, node: object, lo: int, hi: int) -> list[object]:
        if isinstance(node, _SKIPPED_NODE_TYPES):
            return []
        start = self.position(node)
        end = self.last(node)
        if end <= lo or start >= hi:
            return []
        if start > lo and end < hi:
            return [copy.copy(node)]
        if not isinstance(node, Tag):
            return []
        shell = self.soup.new_tag(node.name, attrs=dict(node.attrs))
        for child in node.contents:
            for piece in self._clip(child, lo, hi):
                shell.append(piece)
        if not shell.contents:
            return []
        return [shell]


def _serialize(piece: object) -> str:
    if isinstance(piece, Tag):
        return piece.decode()
    if isinstance(piece, NavigableString):
        return piece.output_ready()
    return str(piece)


def _header_text(tag: Tag) -> str:
    return " ".join(tag.get_text(" ").split())


def locate_headers(
    index: DocumentIndex,
    levels: tuple[int, ...] = (1, 2, 3),
) -> list[HeaderRef]:
    """Return the h1..h3 headings of ``index`` in document order."""
    wanted = {f"h{level}" for level in levels if level in HEADER_TAGS.values()}
    if not wanted:
        return []
    headers = [
        HeaderRef(
            level=HEADER_TAGS[tag.name],
            text=_header_text(tag),
            node=tag,
            position=index.position(tag),
        )
        for tag in index.root.find_all(list(wanted))
    ]
    headers.sort(key=lambda header: header.position)
    return headers


def split_by_headers(index: DocumentIndex, headers: list[HeaderRef]) -> list[RawSection]:
    """
    Partition the document at ``headers``.

    Each section holds everything after its header up to the next header
    (both excluded), the last one runs to the end of the document.
    """
    if not headers:
        raise ValueError("split_by_headers needs at least one header")
    sections: list[RawSection] = []
    for idx, header in enumerate(headers):
        lo = index.last(header.node)
        if idx + 1 < len(headers):
            hi = headers[idx + 1].position
        else:
            hi = index.end + 1
        sections.append(
            RawSection(
                title=header.text or f"Section {idx + 1}",
                content=index.html_between(lo, hi),
                header_level=header.level,
            )
        )
    return sections


def _subdivide(content: str, level: int) -> list[RawSection]:
    next_level = min(level + 1, MAX_HEADER_LEVEL)
    if next_level == level:
        return [RawSection(title="", content=content, header_level=level)]
    index = DocumentIndex.from_html(content)
    headers = locate_headers(index, levels=(next_level,))
    if not headers:
        return [RawSection(title="", content=content, header_level=level)]

    parts: list[RawSection] = []
    lead = index.html_between(0, headers[0].position)
    if count_words(lead) > 0:
        parts.append(RawSection(title="", content=lead, header_level=level))
    for part in split_by_headers(index, headers):
        if count_words(part.content) > LONG_SECTION_WORDS:
            parts.extend(_subdivide(part.content, next_level))
        else:
            parts.append(part)
    return parts


def subdivide_long_section(title: str, content: str, level: int) -> list[RawSection]:
    """
    Re-split an over-long section at headings one level deeper than ``level``.

    Parts that are still too long are split again one level further down,
    stopping at h3. Without deeper headings the content comes back as a
    single section. The first part keeps ``title``; later ones are suffixed
    ``(Part N)``.
    """
    level = max(1, min(level, MAX_HEADER_LEVEL))
    parts = _subdivide(content, level)
    named: list[RawSection] = []
    for idx, part in enumerate(parts):
        named.append(
            RawSection(
                title=title if idx == 0 else f"{title} (Part {idx + 1})",
                content=part.content,
                header_level=part.header_level,
            )
        )
    return named


__all__ = [
    "DocumentIndex",
    "HeaderRef",
    "LONG_SECTION_WORDS",
    "MAX_HEADER_LEVEL",
    "RawSection",
    "locate_headers",
    "split_by_headers",
    "subdivide_long_section",
]
