from __future__ import annotations

import math
import re
import warnings

from bs4 import (
    BeautifulSoup,
    CData,
    Comment,
    Declaration,
    Doctype,
    MarkupResemblesLocatorWarning,
    ProcessingInstruction,
    Tag,
    XMLParsedAsHTMLWarning,
)  # type: ignore
from bs4.builder import ParserRejectedMarkup

# html.parser ships with Python, so every environment builds the same tree.
HTML_PARSER = "html.parser"
WORDS_PER_MINUTE = 200

NAVIGATION_CLASSES = {"nav", "navigation", "toc", "table-of-contents"}
NAVIGATION_ROLES = {"navigation", "doc-toc"}
IMAGE_STYLE = "max-width: 100%; height: auto;"

_TAG_PATTERN = re.compile(r"<[^>]*>")
_PROLOG_TYPES = (Doctype, Declaration, ProcessingInstruction)
_HIDDEN_TYPES = (Comment, CData)


def soup_from_html(html: str | None) -> BeautifulSoup:
    """Parse markup permissively; unparseable input yields an empty tree."""
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)
        try:
            return BeautifulSoup(html or "", HTML_PARSER)
        except ParserRejectedMarkup:
            return BeautifulSoup("", HTML_PARSER)


def content_root(soup: BeautifulSoup) -> Tag:
    """Return the element whose children make up the readable document."""
    body = soup.find("body")
    if isinstance(body, Tag):
        return body
    html_tag = soup.find("html")
    if isinstance(html_tag, Tag):
        head = html_tag.find("head")
        if isinstance(head, Tag):
            head.decompose()
        return html_tag
    for node in list(soup.contents):
        if isinstance(node, _PROLOG_TYPES):
            node.extract()
    return soup


def inner_html(root: Tag) -> str:
    return root.decode_contents()


def _is_navigation(tag: Tag) -> bool:
    if tag.name == "nav":
        return True
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    if any(cls.lower() in NAVIGATION_CLASSES for cls in classes):
        return True
    role = tag.get("role")
    return isinstance(role, str) and role.lower() in NAVIGATION_ROLES


def sanitize_html(html: str | None) -> str:
    """
    Clean a chapter fragment for embedded rendering.

    Comments, navigation blocks, scripts and stylesheets are removed, images are made
    responsive and lazy, and paragraphs without text are dropped. Returns the
    inner HTML of the document body. Running it on its own output returns the
    same string.
    """
    soup = soup_from_html(html)
    for hidden in soup.find_all(string=lambda text: isinstance(text, _HIDDEN_TYPES)):
        hidden.extract()
    root = content_root(soup)
    for tag in root.find_all(_is_navigation):
        if not tag.decomposed:
            tag.decompose()
    for tag in root.find_all(["script", "style"]):
        if not tag.decomposed:
            tag.decompose()
    for img in root.find_all("img"):
        img["style"] = IMAGE_STYLE
        img["loading"] = "lazy"
    for paragraph in root.find_all("p"):
        if paragraph.decomposed:
            continue
        if not paragraph.get_text().strip():
            paragraph.decompose()
    return inner_html(root)


def has_readable_content(html: str) -> bool:
    if count_words(html) > 0:
        return True
    lowered = html.lower()
    return "<img" in lowered or "<svg" in lowered


def count_words(html: str | None) -> int:
    if not html:
        return 0
    text = _TAG_PATTERN.sub(" ", html)
    return len([word for word in text.strip().split() if word])


def estimate_read_minutes(word_count: int) -> int:
    if word_count <= 0:
        return 0
    return math.ceil(word_count / WORDS_PER_MINUTE)


__all__ = [
    "HTML_PARSER",
    "WORDS_PER_MINUTE",
    "content_root",
    "count_words",
    "estimate_read_minutes",
    "has_readable_content",
    "inner_html",
    "sanitize_html",
    "soup_from_html",
]
