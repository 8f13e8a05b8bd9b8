from __future__ import annotations

import argparse
import json
import socket
import sys
from importlib import metadata
from pathlib import Path
from typing import Mapping

import tomllib
import uvicorn
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .core import ParseFailure, parse_epub_file
from .library import import_book
from .logging_utils import build_uvicorn_log_config, set_debug_logging
from .releases import available_releases, check_and_create_releases
from .store import LibraryStore
from .uploads import DEFAULT_MAX_UPLOAD_MB
from .web import WebConfig, create_app


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("epreader")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"epreader {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging.",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="epreader",
        description=(
            "Split EPUBs into readable sections and release them on a schedule. "
            "Commands: parse, import, releases, web."
        ),
    )
    _add_common_flags(ap)
    return ap


def build_parse_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="epreader parse",
        description="Section an EPUB and print a summary.",
    )
    _add_common_flags(ap)
    ap.add_argument("input_path", help="Path to an .epub file.")
    ap.add_argument(
        "--json",
        action="store_true",
        help="Print the parsed book as JSON instead of a summary table.",
    )
    ap.add_argument(
        "--content",
        action="store_true",
        help="Include section HTML in --json output.",
    )
    return ap


def build_import_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="epreader import",
        description="Import EPUBs into a library directory.",
    )
    _add_common_flags(ap)
    ap.add_argument("root", help="Library directory (created if missing).")
    ap.add_argument(
        "input_path",
        help="Path to an .epub file or a directory containing .epub files.",
    )
    ap.add_argument("--user", required=True, help="Owner of the imported books.")
    ap.add_argument(
        "--timezone",
        default="UTC",
        help="Timezone stored for a user seen for the first time (default: UTC).",
    )
    return ap


def build_releases_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="epreader releases",
        description="Run the release scheduler for a user and list unread releases.",
    )
    _add_common_flags(ap)
    ap.add_argument("root", help="Library directory.")
    ap.add_argument("--user", required=True, help="User whose schedules are evaluated.")
    ap.add_argument(
        "--no-check",
        action="store_true",
        help="Only list releases; do not create due ones first.",
    )
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="epreader web",
        description="Serve the reading API over HTTP.",
    )
    _add_common_flags(ap)
    ap.add_argument("root", help="Library directory (created if missing).")
    ap.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host interface for the web server (default: 0.0.0.0).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=2046,
        help="Port for the web server (default: 2046).",
    )
    ap.add_argument(
        "--max-upload-mb",
        type=int,
        default=DEFAULT_MAX_UPLOAD_MB,
        help=f"Largest accepted upload in MB (default: {DEFAULT_MAX_UPLOAD_MB}).",
    )
    ap.add_argument(
        "--upload-workers",
        type=int,
        default=2,
        help="Parallel EPUB imports (default: 2, max 8).",
    )
    ap.add_argument(
        "--timezone",
        default="UTC",
        help="Timezone stored for users seen for the first time (default: UTC).",
    )
    return ap


class _ImportProgress:
    def __init__(self, console: Console) -> None:
        self.console = console
        self.enabled = console.is_terminal
        self.progress: Progress | None = None
        self.task = None
        self.total = 0
        if not self.enabled:
            return
        self.progress = Progress(
            TextColumn("{task.description}", justify="left"),
            BarColumn(bar_width=None),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[detail]}", justify="left"),
            console=console,
            transient=False,
        )

    def __enter__(self) -> _ImportProgress:
        if self.progress is not None:
            self.progress.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.progress is not None:
            self.progress.stop()

    def begin(self, label: str) -> None:
        if self.progress is None:
            return
        self.task = self.progress.add_task(label, total=None, detail="")

    def __call__(self, event: Mapping[str, object]) -> None:
        if self.progress is None or self.task is None:
            return
        event_type = event.get("event")
        total = event.get("total")
        if event_type == "book_start" and isinstance(total, int):
            self.total = max(total, 1)
            self.progress.update(self.task, total=self.total)
        elif event_type == "unit_done":
            index = event.get("index")
            title = event.get("title") or event.get("source") or ""
            if isinstance(index, int):
                self.progress.update(self.task, completed=index, detail=str(title)[:32])
        elif event_type == "book_done":
            self.progress.update(self.task, completed=self.total, detail="")


def _collect_epubs(path: Path) -> list[Path]:
    if path.is_dir():
        epubs = sorted(p for p in path.iterdir() if p.suffix.lower() == ".epub")
        if not epubs:
            raise FileNotFoundError(f"No .epub files found in directory: {path}")
        return epubs
    if path.suffix.lower() != ".epub":
        raise ValueError(f"Input must be an .epub file or directory: {path}")
    if not path.exists():
        raise FileNotFoundError(f"Input path not found: {path}")
    return [path]


def _run_parse(args: argparse.Namespace) -> int:
    inp_path = Path(args.input_path)
    if not inp_path.exists():
        raise FileNotFoundError(f"Input path not found: {inp_path}")
    try:
        book = parse_epub_file(inp_path)
    except ParseFailure as exc:
        raise SystemExit(f"Failed to parse {inp_path}: {exc}") from exc
    if args.json:
        print(json.dumps(book.as_payload(include_content=args.content), ensure_ascii=False, indent=2))
        return 0
    console = Console()
    console.print(f"[bold]{book.title}[/bold]" + (f" by {book.author}" if book.author else ""))
    console.print(f"{book.total_chapters} chapters, {book.total_sections} sections")
    for section in book.sections:
        indent = "  " * (section.header_level - 1)
        console.print(
            f"{section.order_index:>4}  {section.chapter_number:>3}.{section.section_number:<3} "
            f"{indent}{section.title}  "
            f"[dim]({section.word_count} words, ~{section.estimated_read_minutes} min)[/dim]",
            highlight=False,
        )
    if book.skipped:
        console.print(f"[yellow]Skipped: {', '.join(book.skipped)}[/yellow]")
    return 0


def _run_import(args: argparse.Namespace) -> int:
    store = LibraryStore(Path(args.root).expanduser().resolve())
    epubs = _collect_epubs(Path(args.input_path).expanduser())
    console = Console(stderr=True)
    failures = 0
    with _ImportProgress(console) as progress:
        for epub_path in epubs:
            progress.begin(epub_path.name)
            try:
                book = import_book(
                    store,
                    args.user,
                    epub_path.read_bytes(),
                    epub_path.name,
                    progress=progress,
                    default_timezone=args.timezone,
                )
            except ParseFailure as exc:
                failures += 1
                console.print(f"[red]Failed:[/red] {epub_path.name}: {exc}")
                continue
            console.print(
                f"Imported {book.title} ({book.total_sections} sections) as {book.id}",
                highlight=False,
            )
    return 1 if failures else 0


def _run_releases(args: argparse.Namespace) -> int:
    store = LibraryStore(Path(args.root).expanduser().resolve())
    console = Console()
    if not args.no_check:
        for outcome in check_and_create_releases(store, args.user):
            console.print(f"{outcome.book_id}: {outcome.state}", highlight=False)
    entries = available_releases(store, args.user)
    if not entries:
        console.print("No unread releases.")
        return 0
    for entry in entries:
        console.print(f"[bold]{entry['book_title']}[/bold]  {entry['scheduled_for']}")
        sections = entry.get("sections")
        if isinstance(sections, list):
            for section in sections:
                console.print(f"  - {section['title']}", highlight=False)
    return 0


def _resolve_local_ip(host: str) -> str:
    if host not in {"", "0.0.0.0"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def _run_web(args: argparse.Namespace) -> None:
    root = Path(args.root).expanduser().resolve()
    config = WebConfig(
        root=root,
        max_upload_mb=args.max_upload_mb,
        upload_workers=args.upload_workers,
        default_timezone=args.timezone,
    )
    app = create_app(config)
    url = f"http://{_resolve_local_ip(args.host)}:{args.port}/"
    print(f"Serving epreader library from {root}")
    print(f"API URL: {url}")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_config=build_uvicorn_log_config(debug=args.debug),
    )


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    commands = {
        "parse": (build_parse_parser, _run_parse),
        "import": (build_import_parser, _run_import),
        "releases": (build_releases_parser, _run_releases),
    }
    if argv and argv[0] in commands:
        build, run = commands[argv[0]]
        args = build().parse_args(argv[1:])
        set_debug_logging(args.debug)
        return run(args)
    if argv and argv[0] == "web":
        web_args = build_web_parser().parse_args(argv[1:])
        _run_web(web_args)
        return 0

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    parser.error(f"Unknown command: {argv[0]}")
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
