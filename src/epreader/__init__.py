from .core import ParsedBook, ParsedSection, ParseFailure, parse_epub, parse_epub_file
from .markup import count_words, estimate_read_minutes, sanitize_html
from .releases import check_and_create_releases, mark_release_read
from .store import LibraryStore, Store

__all__ = [
    "ParsedBook",
    "ParsedSection",
    "ParseFailure",
    "parse_epub",
    "parse_epub_file",
    "sanitize_html",
    "count_words",
    "estimate_read_minutes",
    "check_and_create_releases",
    "mark_release_read",
    "LibraryStore",
    "Store",
]
