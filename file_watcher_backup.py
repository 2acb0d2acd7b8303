# /file_watcher_backup.py
"""
File Watcher Backup
- Watches a single source file and mirrors it into a destination folder under the same name.
- Copies once on startup so the backup is never stale relative to the start of the watch.
- Coalesces bursts of write notifications (editors save in several writes) into one copy.
- Handles "atomic save" editors: a temp file renamed over the source counts as a write.
- Copy failures are logged and absorbed; the watch keeps running until killed.
- Logs to a dated file under ~/file-watcher-backup/ and, when attached to a terminal, to the console.
  - COPY green
  - REMOVE / RENAME of the watched file orange
  - errors red
- Exit codes follow sysexits: 66 missing source, 74 I/O error, 64 source == backup.

Usage
  pip install watchdog colorama
  python file_watcher_backup.py notes.txt /mnt/backup
  python file_watcher_backup.py -s notes.txt -d /mnt/backup --debounce 2
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import logging
import os
import queue
import shutil
import stat
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

try:
    from colorama import init as colorama_init  # type: ignore
except Exception:  # pragma: no cover
    colorama_init = None

__version__ = "0.1.0"

APP_NAME = "file-watcher-backup"
APP_DIR = Path.home() / APP_NAME

DEBOUNCE_WINDOW_SEC = 1.0
IDLE_POLL_SEC = 1.0

# sysexits.h
EX_USAGE = 64
EX_NOINPUT = 66
EX_IOERR = 74

TRACE = 5
logging.addLevelName(TRACE, "TRACE")


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "SYNC": Ansi.GREEN,
    "WATCH": Ansi.LIGHT_BROWN,
    "CREATE": Ansi.LIGHT_BROWN,
    "REMOVE": Ansi.ORANGE,
    "RENAME": Ansi.ORANGE,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        if action and action in base:
            color = ACTION_COLORS.get(action, "")
            base = base.replace(action, f"{color}{action}{Ansi.RESET}", 1)

        path_text = getattr(record, "path_text", None)
        if path_text and path_text in base:
            base = base.replace(path_text, f"{Ansi.WHITE}{path_text}{Ansi.RESET}")

        return base


def _today_log_name() -> str:
    return f"{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path, verbose: bool = False) -> logging.Logger:
    """
    Dated plain-text log file (everything down to TRACE), plus a console handler
    when stdout is a terminal.
    Raises OSError when the log directory or file cannot be created.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger("file_watcher_backup")
    logger.setLevel(TRACE)
    logger.propagate = False

    if any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        return logger

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(TRACE)
    logger.addHandler(fh)

    if _supports_color(sys.stdout):
        if colorama_init:
            colorama_init()
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(logging.DEBUG if verbose else logging.INFO)
        ch.setFormatter(ColorizingFormatter(use_color=True, fmt=fmt, datefmt=datefmt))
        logger.addHandler(ch)

    logger.debug("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Errors / model
# -------------------------

class StartupError(Exception):
    """Fatal before the watch begins; carries the process exit status."""

    def __init__(self, message: str, exit_code: int = EX_IOERR):
        super().__init__(message)
        self.exit_code = exit_code


class WatchSetupError(StartupError):
    pass


@dataclass(frozen=True)
class WatchTarget:
    source_path: Path
    destination_dir: Path
    destination_file_path: Path

    @classmethod
    def create(cls, source_path: Path, destination_dir: Path) -> "WatchTarget":
        return cls(
            source_path=source_path,
            destination_dir=destination_dir,
            destination_file_path=destination_dir / source_path.name,
        )


class EventKind(enum.Enum):
    WRITE = "write"
    CREATE = "create"
    REMOVE = "remove"
    RENAME = "rename"


@dataclass(frozen=True)
class ChangeEvent:
    kind: EventKind
    path: Path
    timestamp: float


@dataclass(frozen=True)
class WatchError:
    """The notification channel failed after the watch started."""

    message: str


StreamItem = Union[ChangeEvent, WatchError]


@dataclass(frozen=True)
class CopyOutcome:
    bytes_copied: Optional[int] = None
    error: Optional[OSError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    @property
    def message(self) -> str:
        if self.error is None:
            return f"copied {self.bytes_copied} bytes"
        return str(self.error)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source: Path
    destination: Path
    log_dir: Path
    debounce_sec: float
    verbose: bool


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Whenever a file changes, copy its content to a backup file.",
    )
    p.add_argument("source", nargs="?", metavar="FILE", help="Source file to watch.")
    p.add_argument("destination", nargs="?", metavar="DIR", help="Target directory in which the file will be copied.")
    p.add_argument("-s", "--source", dest="source_opt", metavar="FILE", help="Source file to watch.")
    p.add_argument("-d", "--destination", dest="destination_opt", metavar="DIR", help="Target directory.")
    p.add_argument("--log-dir", type=str, default=None, help=f"Directory for log files (default: {APP_DIR}).")
    p.add_argument(
        "--debounce",
        type=float,
        default=DEBOUNCE_WINDOW_SEC,
        help="Seconds of quiet required before a burst of writes is copied.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Show debug output on the console.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def parse_args(argv: list[str]) -> AppConfig:
    p = build_parser()
    args = p.parse_args(argv)

    source = args.source_opt or args.source
    destination = args.destination_opt or args.destination
    if not source:
        p.error("the following arguments are required: source (-s/--source)")
    if not destination:
        p.error("the following arguments are required: destination (-d/--destination)")
    if args.debounce < 0:
        p.error("--debounce must not be negative")

    return AppConfig(
        source=Path(source),
        destination=Path(destination),
        log_dir=Path(args.log_dir).expanduser() if args.log_dir else APP_DIR,
        debounce_sec=float(args.debounce),
        verbose=bool(args.verbose),
    )


# -------------------------
# Validation
# -------------------------

def validate_source(source: Path, logger: logging.Logger) -> Path:
    logger.debug("Input path: `%s`", source)
    try:
        # stat first: opening a FIFO would block
        if not stat.S_ISREG(source.stat().st_mode):
            raise StartupError(f"Error accessing file `{source}`: not a regular file", EX_IOERR)
        with source.open("rb"):
            pass
    except FileNotFoundError as e:
        logger.log(TRACE, "%r", e)
        raise StartupError(f"File `{source}` not found", EX_NOINPUT) from e
    except OSError as e:
        logger.log(TRACE, "%r", e)
        raise StartupError(f"Error accessing file `{source}`: {e}", EX_IOERR) from e

    logger.info("Input file validated")
    return source.resolve()


def prepare_destination(destination: Path, logger: logging.Logger) -> Path:
    logger.debug("Destination dir is: %s", destination)
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.debug("%r", e)
        raise StartupError(f"Destination directory `{destination}` setup failed: {e}", EX_IOERR) from e

    logger.info("Destination dir `%s` setup completed", destination)
    return destination.resolve()


def build_target(source: Path, destination: Path, logger: logging.Logger) -> WatchTarget:
    """Validate both sides in order; a missing source never creates the destination."""
    src = validate_source(source, logger)
    dst_dir = prepare_destination(destination, logger)
    target = WatchTarget.create(src, dst_dir)
    if target.destination_file_path == target.source_path:
        raise StartupError("Destination file would be the source file itself", EX_USAGE)
    return target


# -------------------------
# Copy
# -------------------------

def copy_file(src: Path, dst: Path) -> CopyOutcome:
    """
    Stage the copy next to dst and move it into place, so dst only ever holds a
    complete copy. Returns the number of bytes copied or the OSError.
    """
    tmp = dst.with_name(f".{dst.name}.tmp")
    try:
        shutil.copy2(src, tmp)
        size = tmp.stat().st_size
        os.replace(tmp, dst)
        return CopyOutcome(bytes_copied=size)
    except OSError as e:
        try:
            tmp.unlink()
        except OSError:
            pass
        return CopyOutcome(error=e)


Copier = Callable[[Path, Path], CopyOutcome]


def copy_logged(
    logger: logging.Logger,
    target: WatchTarget,
    reason: str,
    copier: Copier = copy_file,
) -> CopyOutcome:
    outcome = copier(target.source_path, target.destination_file_path)
    if outcome.ok:
        log_action(
            logger,
            "COPY",
            f"({reason}) Copied {outcome.bytes_copied} bytes -> {target.destination_file_path}",
            path=target.destination_file_path,
            level=logging.DEBUG,
        )
    else:
        logger.debug("%r", outcome.error)
        log_action(
            logger,
            "COPY",
            f"({reason}) copy failed. Reason: {outcome.error_kind}: {outcome.message}",
            path=target.destination_file_path,
            level=logging.ERROR,
        )
    return outcome


def initial_sync(target: WatchTarget, logger: logging.Logger, copier: Copier = copy_file) -> CopyOutcome:
    logger.debug("Initial copy of `%s` into `%s`", target.source_path, target.destination_file_path)
    return copy_logged(logger, target, "initial", copier)


# -------------------------
# Debouncing
# -------------------------

class Debouncer:
    """
    Trailing-edge coalescing driven by explicit timestamps.

    A path is due once ``window`` seconds have passed since its last write;
    every write inside the window pushes the deadline back.
    """

    def __init__(self, window: float = DEBOUNCE_WINDOW_SEC):
        self.window = window
        self._last_seen: dict[Path, float] = {}

    def add(self, path: Path, ts: float) -> None:
        prev = self._last_seen.get(path)
        self._last_seen[path] = ts if prev is None else max(prev, ts)

    def pending(self) -> bool:
        return bool(self._last_seen)

    def next_deadline(self) -> Optional[float]:
        if not self._last_seen:
            return None
        return min(self._last_seen.values()) + self.window

    def flush(self, now: float) -> list[Path]:
        due = [p for p, last in self._last_seen.items() if now - last >= self.window]
        for p in due:
            del self._last_seen[p]
        return due


def coalesce(timestamps: Iterable[float], window: float = DEBOUNCE_WINDOW_SEC) -> list[float]:
    """Map a sorted stream of write timestamps to the times their bursts are emitted."""
    d = Debouncer(window)
    key = Path(".")
    out: list[float] = []
    for ts in timestamps:
        deadline = d.next_deadline()
        if deadline is not None and ts >= deadline:
            d.flush(deadline)
            out.append(deadline)
        d.add(key, ts)
    deadline = d.next_deadline()
    if deadline is not None:
        out.append(deadline)
    return out


class DebouncedEventStream:
    """
    Single consumer over the raw event channel.

    Write events go through the Debouncer; every other item (non-write kinds,
    WatchError) is passed through as soon as it is read.
    """

    def __init__(
        self,
        channel: "queue.Queue[StreamItem]",
        window: float = DEBOUNCE_WINDOW_SEC,
        clock: Callable[[], float] = time.monotonic,
        health_check: Optional[Callable[[], Optional[WatchError]]] = None,
        idle_poll_sec: float = IDLE_POLL_SEC,
    ):
        self.channel = channel
        self.debouncer = Debouncer(window)
        self.clock = clock
        self.health_check = health_check
        self.idle_poll_sec = idle_poll_sec

    def __iter__(self) -> Iterator[StreamItem]:
        while True:
            yield from self.poll()

    def _timeout(self) -> float:
        deadline = self.debouncer.next_deadline()
        if deadline is None:
            return self.idle_poll_sec
        return min(self.idle_poll_sec, max(0.0, deadline - self.clock()))

    def _drain(self, first: StreamItem) -> list[StreamItem]:
        items = [first]
        while True:
            try:
                items.append(self.channel.get_nowait())
            except queue.Empty:
                return items

    def poll(self) -> list[StreamItem]:
        """
        Wait for the next raw item, take everything already queued behind it,
        then return whatever is ready.
        """
        out: list[StreamItem] = []
        try:
            first = self.channel.get(timeout=self._timeout())
        except queue.Empty:
            if self.health_check is not None:
                err = self.health_check()
                if err is not None:
                    out.append(err)
        else:
            # a backlog built up during a slow copy is one burst, not many
            for item in self._drain(first):
                if isinstance(item, ChangeEvent) and item.kind is EventKind.WRITE:
                    self.debouncer.add(item.path, item.timestamp)
                else:
                    out.append(item)

        now = self.clock()
        for path in self.debouncer.flush(now):
            out.append(ChangeEvent(EventKind.WRITE, path, now))
        return out


# -------------------------
# Watchdog subscription
# -------------------------

def _same_path(raw, key: str) -> bool:
    if not raw:
        return False
    return os.path.normcase(os.path.abspath(os.fsdecode(raw))) == key


class SourceEventHandler(FileSystemEventHandler):
    """Runs on the observer thread; only translates and enqueues."""

    def __init__(
        self,
        source: Path,
        channel: "queue.Queue[StreamItem]",
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.source = source
        self.channel = channel
        self.clock = clock
        self._key = os.path.normcase(os.path.abspath(source))

    def _put(self, kind: EventKind) -> None:
        self.channel.put(ChangeEvent(kind, self.source, self.clock()))

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory and _same_path(event.src_path, self._key):
            self._put(EventKind.WRITE)

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory and _same_path(event.src_path, self._key):
            self._put(EventKind.CREATE)

    def on_deleted(self, event: FileSystemEvent):
        if _same_path(event.src_path, self._key):
            self._put(EventKind.REMOVE)

    def on_moved(self, event: FileSystemEvent):
        if event.is_directory:
            return
        if _same_path(getattr(event, "dest_path", None), self._key):
            # temp file renamed over the source: new content in place
            self._put(EventKind.WRITE)
        elif _same_path(event.src_path, self._key):
            self._put(EventKind.RENAME)


class SourceSubscription:
    """
    Non-recursive watch of the source's parent directory, filtered to the source
    file. Events land in ``channel``.
    """

    def __init__(self, source: Path, channel: "queue.Queue[StreamItem]", logger: logging.Logger, observer=None):
        self.source = source
        self.channel = channel
        self.logger = logger
        self.observer = observer if observer is not None else Observer()
        self.handler = SourceEventHandler(source, channel)
        self._fault_reported = False

    def start(self) -> None:
        try:
            self.observer.schedule(self.handler, str(self.source.parent), recursive=False)
            self.observer.start()
        except OSError as e:
            self.logger.debug("%r", e)
            raise WatchSetupError(f"Error adding path to watcher. {e}", EX_IOERR) from e
        log_action(self.logger, "WATCH", f"watching {self.source}", path=self.source)

    def check(self) -> Optional[WatchError]:
        """Report a dead observer/emitter once; later checks stay silent."""
        if self._fault_reported:
            return None
        emitters = getattr(self.observer, "emitters", ())
        if self.observer.is_alive() and all(e.is_alive() for e in emitters):
            return None
        self._fault_reported = True
        return WatchError("notification thread stopped; no further changes will be seen")

    def stop(self) -> None:
        try:
            self.observer.stop()
            self.observer.join(timeout=10)
        except RuntimeError:
            # never started
            pass


# -------------------------
# Watch loop
# -------------------------

class LoopState(enum.Enum):
    IDLE = "idle"
    COPYING = "copying"


class WatchLoop:
    """
    IDLE -> COPYING -> IDLE on every debounced write of the source. Other
    events are logged and leave the state alone. Copy failures never end the
    loop; only the end of ``events`` (or the process) does.
    """

    def __init__(
        self,
        target: WatchTarget,
        events: Iterable[StreamItem],
        logger: logging.Logger,
        copier: Copier = copy_file,
    ):
        self.target = target
        self.events = events
        self.logger = logger
        self.copier = copier
        self.state = LoopState.IDLE

    def run(self) -> None:
        self.logger.info("Starting watcher... (Ctrl+C to stop)")
        for item in self.events:
            self.handle(item)

    def handle(self, item: StreamItem) -> Optional[CopyOutcome]:
        if isinstance(item, WatchError):
            log_action(self.logger, "WATCH", f"Watch error. {item.message}", level=logging.ERROR)
            return None

        if item.kind is EventKind.WRITE:
            self.state = LoopState.COPYING
            try:
                return copy_logged(self.logger, self.target, "modified", self.copier)
            finally:
                self.state = LoopState.IDLE

        if item.kind is EventKind.CREATE:
            log_action(self.logger, "CREATE", f"{item.path} created, waiting for a write", path=item.path, level=logging.DEBUG)
        else:
            log_action(
                self.logger,
                item.kind.name,
                f"{item.path} is gone; backup {self.target.destination_file_path} is kept and "
                f"will update when the file is written again",
                path=item.path,
                level=logging.WARNING,
            )
        return None


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        logger = setup_logger(cfg.log_dir, verbose=cfg.verbose)
    except OSError as e:
        print(f"Log setup failed in {cfg.log_dir}: {e}", file=sys.stderr)
        return EX_IOERR

    try:
        target = build_target(cfg.source, cfg.destination, logger)
    except StartupError as e:
        logger.error("%s", e)
        return e.exit_code

    initial_sync(target, logger)

    channel: "queue.Queue[StreamItem]" = queue.Queue()
    subscription = SourceSubscription(target.source_path, channel, logger)
    try:
        subscription.start()
    except WatchSetupError as e:
        logger.error("%s", e)
        subscription.stop()
        return e.exit_code

    stream = DebouncedEventStream(channel, window=cfg.debounce_sec, health_check=subscription.check)
    try:
        WatchLoop(target, stream, logger).run()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        subscription.stop()
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
