from __future__ import annotations

import pytest

from epub_fixtures import words
from epreader.markup import count_words
from epreader.sections import (
    DocumentIndex,
    locate_headers,
    split_by_headers,
    subdivide_long_section,
)


def test_headers_follow_document_order_not_level() -> None:
    index = DocumentIndex.from_html(
        "<h2>B</h2><p>x</p><div><h1>A</h1><section><h3>C</h3></section></div><h2>D</h2>"
    )
    headers = locate_headers(index)
    assert [(h.level, h.text) for h in headers] == [(2, "B"), (1, "A"), (3, "C"), (2, "D")]
    positions = [h.position for h in headers]
    assert positions == sorted(positions)


def test_compare_orders_nodes_by_position() -> None:
    index = DocumentIndex.from_html("<div><p id='a'>a</p></div><p id='b'>b</p>")
    first = index.root.find(id="a")
    second = index.root.find(id="b")
    assert index.compare(first, second) < 0
    assert index.compare(second, first) > 0
    assert index.compare(first, first) == 0


def test_split_ranges_exclude_headers() -> None:
    index = DocumentIndex.from_html(
        "<p>lead</p><h1>One</h1><p>first</p><h2>Two</h2><p>second</p><p>more</p>"
    )
    sections = split_by_headers(index, locate_headers(index))
    assert [s.title for s in sections] == ["One", "Two"]
    assert [s.header_level for s in sections] == [1, 2]
    assert sections[0].content == "<p>first</p>"
    assert sections[1].content == "<p>second</p><p>more</p>"
    assert all("lead" not in s.content for s in sections)


def test_split_keeps_partial_containers() -> None:
    index = DocumentIndex.from_html(
        '<div class="chapter"><h1>One</h1><p>a</p><h1>Two</h1><p>b</p></div><p>tail</p>'
    )
    sections = split_by_headers(index, locate_headers(index))
    assert sections[0].content == '<div class="chapter"><p>a</p></div>'
    assert sections[1].content == '<div class="chapter"><p>b</p></div><p>tail</p>'


def test_empty_header_gets_placeholder_title() -> None:
    index = DocumentIndex.from_html("<h1> </h1><p>a</p><h2>Named</h2><p>b</p>")
    sections = split_by_headers(index, locate_headers(index))
    assert sections[0].title == "Section 1"
    assert sections[1].title == "Named"


def test_split_requires_headers() -> None:
    index = DocumentIndex.from_html("<p>no headings</p>")
    with pytest.raises(ValueError):
        split_by_headers(index, [])


def test_subdivision_uses_next_level_and_names_parts() -> None:
    content = "".join(
        f"<h2>Part {idx}</h2><p>{words(1250, prefix=f'p{idx}w')}</p>" for idx in range(4)
    )
    assert count_words(content) > 5000
    parts = subdivide_long_section("Long", content, 1)
    assert [p.title for p in parts] == ["Long", "Long (Part 2)", "Long (Part 3)", "Long (Part 4)"]
    assert all(p.header_level == 2 for p in parts)
    original = count_words(content)
    assert all(count_words(p.content) <= original for p in parts)
    assert "p0w0" in parts[0].content and "p3w0" in parts[3].content


def test_subdivision_terminates_without_deeper_headers() -> None:
    # 5000 words under h1 and h2 only; the 3000-word h2 part has no h3 below it.
    content = (
        f"<h2>Short</h2><p>{words(2000, prefix='a')}</p>"
        f"<h2>Long</h2><p>{words(3000, prefix='b')}</p>"
    )
    parts = subdivide_long_section("Chapter", content, 1)
    assert len(parts) == 2
    assert count_words(parts[1].content) == 3000
    assert all(count_words(p.content) <= count_words(content) for p in parts)


def test_subdivision_without_any_deeper_headers_returns_single_section() -> None:
    content = f"<p>{words(2500)}</p>"
    parts = subdivide_long_section("Solo", content, 1)
    assert len(parts) == 1
    assert parts[0].title == "Solo"
    assert parts[0].content == content


def test_subdivision_at_deepest_level_stops() -> None:
    content = f"<h3>Deeper</h3><p>{words(2500)}</p>"
    parts = subdivide_long_section("Leaf", content, 3)
    assert len(parts) == 1
    assert parts[0].content == content


def test_subdivision_keeps_lead_text_as_first_part() -> None:
    content = f"<p>{words(100, prefix='lead')}</p><h2>Next</h2><p>{words(2000)}</p>"
    parts = subdivide_long_section("Title", content, 1)
    assert [p.title for p in parts] == ["Title", "Title (Part 2)"]
    assert "lead0" in parts[0].content
    assert "lead0" not in parts[1].content
