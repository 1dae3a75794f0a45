"""CLI entry point for resumable uploads to Google Photos."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import requests
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from camedia.config import UploadConfig, load_config
from camedia.errors import UploadCancelled, UploadError
from camedia.photos_client import PhotosClient, authorized_session
from camedia.session_store import FileIdentity, SessionStore
from camedia.uploader import ResumableUploader, UploadProgress

LOG_DIR = "logs"

logger = logging.getLogger(__name__)


def format_size(num_bytes: int) -> str:
    """Return a human-readable file size string."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(num_bytes) < 1024:
            return f"{num_bytes:.1f} {unit}" if unit != "B" else f"{num_bytes} {unit}"
        num_bytes /= 1024  # type: ignore[assignment]
    return f"{num_bytes:.1f} PB"


@dataclass
class UploadRunResult:
    """Aggregated result of an upload run."""

    uploaded: dict[str, str] = field(default_factory=dict)  # file -> media item id or token
    failed: dict[str, str] = field(default_factory=dict)  # file -> error
    total_bytes: int = 0

    @property
    def all_ok(self) -> bool:
        return len(self.failed) == 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="camedia",
        description="Resumable uploads of local media files to Google Photos.",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    up = sub.add_parser("upload", help="Upload files, resuming interrupted uploads")
    up.add_argument("files", nargs="+", help="Media files to upload")
    up.add_argument(
        "--workers",
        type=int,
        default=int(os.getenv("CAMEDIA_WORKERS", "1")),
        help="Files uploaded in parallel (default: 1)",
    )
    up.add_argument(
        "--describe",
        action="store_true",
        help="Use the file name as the media item description",
    )
    up.add_argument(
        "--token-only",
        action="store_true",
        help="Stop after the byte upload and print upload tokens instead of creating media items",
    )

    sessions = sub.add_parser("sessions", help="List or clear persisted in-flight uploads")
    sessions.add_argument(
        "--clear",
        metavar="FILE",
        help="Forget the persisted upload session for FILE",
    )
    return parser


def _setup_logging(verbose: bool, console: Console, log_filename: str) -> None:
    """Configure dual logging: rich console + plain-text log file."""
    log_level = logging.DEBUG if verbose else logging.INFO
    plain_format = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"

    root = logging.getLogger()
    root.setLevel(log_level)

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(log_level)
    root.addHandler(rich_handler)

    # Plain-text file handler (no ANSI in log files)
    file_handler = logging.FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(plain_format, datefmt="%H:%M:%S"))
    root.addHandler(file_handler)


def _print_summary(console: Console, result: UploadRunResult, elapsed: float, log_filename: str) -> None:
    """Print a rich summary panel at the end of an upload run."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Uploaded", f"[green]{len(result.uploaded)}[/green]")
    failed_style = "red bold" if result.failed else "green"
    table.add_row("Failed", f"[{failed_style}]{len(result.failed)}[/{failed_style}]")
    if result.total_bytes:
        table.add_row("Total data", format_size(result.total_bytes))
    table.add_row("Elapsed", f"{elapsed:.1f}s")

    panel_style = "green" if result.all_ok else "red"
    title = "Upload Complete" if result.all_ok else "Upload Complete (with errors)"
    console.print()
    console.print(Panel(table, title=title, border_style=panel_style, padding=(1, 2)))

    if result.failed:
        console.print()
        console.print(Text("Failed files:", style="red bold"))
        for name, error in result.failed.items():
            console.print(f"  - {name}: {error}", style="red")
        console.print("Re-run the same command to resume them.", style="dim")

    console.print(f"\nFull log saved to: {log_filename}", style="dim")


# ── upload run ───────────────────────────────────────────────────────


def _log_progress(progress: UploadProgress) -> None:
    logger.debug(
        "%s: %s / %s (%.0f%%)",
        progress.file_name,
        format_size(progress.bytes_uploaded),
        format_size(progress.total_bytes),
        progress.fraction * 100,
    )


def run_uploads(
    files: list[str],
    config: UploadConfig,
    session_factory: Callable[[], requests.Session],
    workers: int = 1,
    describe: bool = False,
    token_only: bool = False,
    cancel_event: threading.Event | None = None,
) -> UploadRunResult:
    """Upload *files* with up to *workers* independent uploaders.

    Each worker thread gets its own HTTP session from *session_factory*; the
    session store is shared. A failed file does not stop the others.
    """
    store = SessionStore(config.state_dir)
    result = UploadRunResult()
    result_lock = threading.Lock()
    thread_local = threading.local()
    cancel_event = cancel_event or threading.Event()

    def _uploader() -> ResumableUploader:
        if not hasattr(thread_local, "client"):
            thread_local.client = PhotosClient(
                session_factory(), base_url=config.base_url, chunk_timeout=config.chunk_timeout
            )
        return ResumableUploader(
            thread_local.client,
            store,
            chunk_size=config.chunk_size,
            media_kind=config.media_kind,
            chunk_timeout=config.chunk_timeout,
        )

    def _upload_one(path: str) -> None:
        uploader = _uploader()
        name = Path(path).name
        logger.info("Uploading %s", path)
        try:
            if token_only:
                outcome = uploader.upload(
                    path, progress_callback=_log_progress, cancel_event=cancel_event
                )
            else:
                item = uploader.upload_media_item(
                    path,
                    description=name if describe else None,
                    progress_callback=_log_progress,
                    cancel_event=cancel_event,
                )
                outcome = item.id
        except UploadError as exc:
            logger.error("Failed to upload %s: %s", path, exc)
            logger.debug("Traceback for %s", path, exc_info=True)
            with result_lock:
                result.failed[path] = str(exc)
            return
        except requests.exceptions.Timeout as exc:
            logger.error("Timed out uploading %s: %s", path, exc)
            with result_lock:
                result.failed[path] = f"timeout: {exc}"
            return

        with result_lock:
            result.uploaded[path] = outcome
            result.total_bytes += uploader.media.size

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {executor.submit(_upload_one, path): path for path in files}
        for future in as_completed(futures):
            try:
                future.result()
            except UploadCancelled:
                logger.warning("Upload of %s cancelled; progress kept for resume.", futures[future])
                for pending in futures:
                    pending.cancel()
            except Exception as exc:
                path = futures[future]
                logger.error("Unhandled exception for %s: %s", path, exc)
                with result_lock:
                    result.failed[path] = str(exc)
    return result


def _cmd_sessions(args, config: UploadConfig, console: Console) -> int:
    store = SessionStore(config.state_dir)
    if args.clear:
        try:
            identity = FileIdentity.of(args.clear)
        except OSError as exc:
            logging.error("Cannot stat %s: %s", args.clear, exc)
            return 1
        store.delete(identity)
        logging.info("Cleared upload session for %s", args.clear)
        return 0

    sessions = store.list_sessions()
    if not sessions:
        console.print("No uploads in progress.")
        return 0

    table = Table(title=f"Uploads in progress ({store.state_dir})")
    table.add_column("File", style="cyan")
    table.add_column("Confirmed", justify="right")
    table.add_column("Total", justify="right")
    for session in sessions:
        table.add_row(
            session.file_path,
            format_size(session.confirmed_bytes),
            format_size(session.total_bytes),
        )
    console.print(table)
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)

    use_color = sys.stdout.isatty() and not args.no_color and not os.getenv("NO_COLOR")
    console = Console(force_terminal=use_color, no_color=not use_color)

    os.makedirs(LOG_DIR, exist_ok=True)
    log_filename = os.path.join(
        LOG_DIR, f"upload_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    )
    _setup_logging(args.verbose, console, log_filename)

    try:
        config = load_config()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "sessions":
        return _cmd_sessions(args, config, console)

    logging.info("Log file: %s", log_filename)
    logging.info("Upload state: %s", config.state_dir)

    cancel_event = threading.Event()

    def _handle_interrupt(sig, frame):  # noqa: ANN001
        if not cancel_event.is_set():
            logging.warning("Interrupt received – stopping; progress is saved for resume.")
            cancel_event.set()

    signal.signal(signal.SIGINT, _handle_interrupt)

    console.print(Panel("Google Photos upload", style="bold blue", padding=(0, 2)))
    start = time.monotonic()
    result = run_uploads(
        args.files,
        config,
        session_factory=lambda: authorized_session(config.token_file),
        workers=args.workers,
        describe=args.describe,
        token_only=args.token_only,
        cancel_event=cancel_event,
    )
    elapsed = time.monotonic() - start

    if args.token_only:
        for path, token in result.uploaded.items():
            console.print(f"{path}\t{token}", markup=False, highlight=False)

    _print_summary(console, result, elapsed, log_filename)
    return 0 if result.all_ok and not cancel_event.is_set() else 1


if __name__ == "__main__":
    sys.exit(main())
