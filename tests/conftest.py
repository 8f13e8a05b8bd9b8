from __future__ import annotations

from pathlib import Path

import pytest

from epub_fixtures import build_epub, nav_document, xhtml
from epreader.store import LibraryStore


@pytest.fixture
def store(tmp_path: Path) -> LibraryStore:
    return LibraryStore(tmp_path / "library")


@pytest.fixture
def nested_toc_epub() -> bytes:
    """Chapter 1 (Section 1.1, Section 1.2) and Chapter 2, split by fragment anchors."""
    ch1 = xhtml(
        """
    <h1 id="c1">Chapter 1</h1>
    <p>Opening of the first chapter.</p>
    <h2 id="s11">Section 1.1</h2>
    <p>Text of section one one.</p>
    <h2 id="s12">Section 1.2</h2>
    <p>Text of section one two.</p>
"""
    )
    ch2 = xhtml(
        """
    <h1>Chapter 2</h1>
    <p>The second chapter.</p>
"""
    )
    nav = nav_document(
        """
<li><a href="ch1.xhtml#c1">Chapter 1</a>
  <ol>
    <li><a href="ch1.xhtml#s11">Section 1.1</a></li>
    <li><a href="ch1.xhtml#s12">Section 1.2</a></li>
  </ol>
</li>
<li><a href="ch2.xhtml">Chapter 2</a></li>
"""
    )
    return build_epub([("ch1.xhtml", ch1), ("ch2.xhtml", ch2)], nav=nav)
