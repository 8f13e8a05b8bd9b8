from __future__ import annotations

import json
from pathlib import Path

import pytest

from epub_fixtures import build_epub, xhtml
from epreader import cli
from epreader.store import LibraryStore


def _write_epub(path: Path) -> Path:
    path.write_bytes(
        build_epub(
            [
                ("a.xhtml", xhtml("<h1>First</h1><p>alpha beta</p>")),
                ("b.xhtml", xhtml("<h1>Second</h1><p>gamma</p>")),
            ]
        )
    )
    return path


def test_parse_prints_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    epub_path = _write_epub(tmp_path / "book.epub")
    assert cli.main(["parse", str(epub_path), "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["title"] == "Sample Book"
    assert payload["total_sections"] == 2
    assert [section["title"] for section in payload["sections"]] == ["First", "Second"]
    assert "content" not in payload["sections"][0]


def test_parse_rejects_broken_file(tmp_path: Path) -> None:
    broken = tmp_path / "broken.epub"
    broken.write_bytes(b"nope")
    with pytest.raises(SystemExit):
        cli.main(["parse", str(broken)])


def test_import_directory_into_library(tmp_path: Path) -> None:
    source = tmp_path / "incoming"
    source.mkdir()
    _write_epub(source / "one.epub")
    (source / "two.epub").write_bytes(b"broken")
    library = tmp_path / "library"

    assert cli.main(["import", str(library), str(source), "--user", "u1"]) == 1
    books = LibraryStore(library).list_books("u1")
    assert [book.source_name for book in books] == ["one.epub"]
    assert books[0].status == "ready"


def test_releases_lists_nothing_for_new_user(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["releases", str(tmp_path / "library"), "--user", "u1"]) == 0
    assert "No unread releases." in capsys.readouterr().out


def test_unknown_command_exits(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        cli.main(["frobnicate"])
    assert cli.main([]) == 0
    assert "usage: epreader" in capsys.readouterr().out
