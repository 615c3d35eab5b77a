# /backup_mirror.py
"""
Backup Mirror (no UI)
- Seeds a working folder from a backup folder on startup (the working folder is cleared first).
- Polls the working folder once per interval and copies new/modified files into the backup folder.
- Change detection trusts modification times only (whole seconds); no hashing.
- Deletions are never propagated: removing a working file leaves its backup copy in place.
- Copies for one poll run concurrently; the mtime table is guarded by a reader/writer lock.
- Optional gitignore-style exclusions when SyncLoop is embedded (IgnoreMatcher).
- Styled console output:
  - COPY green
  - DELETE / RMDIR orange
  - sync failures / errors red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).

Usage
  pip install pathspec colorama
  python backup_mirror.py --work-dir "/work" --backup-dir "/backup"
  python backup_mirror.py -w "/work" -b "/backup" --log-dir ./logs
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import logging
import os
import shutil
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from colorama import just_fix_windows_console
from pathspec import PathSpec

LOGGER_NAME = "backup_mirror"

DEFAULT_INTERVAL_SEC = 1.0


# -------------------------
# Errors
# -------------------------

class BackupMirrorError(Exception):
    """Base class for every error raised by backup_mirror."""


class ConfigError(BackupMirrorError):
    """Missing, invalid or overlapping root directories."""


class SnapshotError(BackupMirrorError):
    """A directory walk could not be completed."""


class CopyError(BackupMirrorError):
    """A single file could not be copied."""


class InitializationError(BackupMirrorError):
    """The working directory could not be cleared or populated."""


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
    "DELETE": Ansi.ORANGE,
    "RMDIR": Ansi.ORANGE,
    "INIT": Ansi.LIGHT_BROWN,
    "SYNC": Ansi.LIGHT_BROWN,
    "SYNC_FAIL": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "backup_mirror") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, name: str = LOGGER_NAME) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(logging.INFO)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else path.is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class Config:
    work_dir: Path
    backup_dir: Path
    log_dir: Optional[Path]


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Back up a working folder into a backup folder while you work in it.")
    p.add_argument(
        "-w", "--work-dir", type=str, required=True,
        help="The folder you will be working in. It is completely cleared on startup.",
    )
    p.add_argument(
        "-b", "--backup-dir", type=str, required=True,
        help="The folder files are copied to. Used to initialize the working folder.",
    )
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files (console only if omitted).")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    return Config(
        work_dir=Path(args.work_dir),
        backup_dir=Path(args.backup_dir),
        log_dir=Path(args.log_dir).expanduser().resolve() if args.log_dir else None,
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(work: Path, backup: Path) -> tuple[Path, Path]:
    work = work.expanduser().resolve()
    backup = backup.expanduser().resolve()

    if not work.is_dir():
        raise ConfigError(f"work_dir must be a directory: {work}")
    if not backup.is_dir():
        raise ConfigError(f"backup_dir must be a directory: {backup}")
    if work == backup:
        raise ConfigError("work_dir and backup_dir must be different.")
    if _is_subpath(backup, work):
        raise ConfigError("backup_dir must NOT be inside work_dir (would cause loops).")
    if _is_subpath(work, backup):
        raise ConfigError("work_dir must NOT be inside backup_dir (it is cleared on startup).")

    return work, backup


# -------------------------
# Snapshot + copy helpers
# -------------------------

class IgnoreMatcher:
    def __init__(self, root: Path, patterns: list[str] | tuple[str, ...]):
        self.root = Path(root)
        self.spec = PathSpec.from_lines("gitwildmatch", patterns)

    def is_ignored(self, path: Path, is_dir: bool = False) -> bool:
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return True
        rel_posix = rel.as_posix()
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def file_mtime(path: Path) -> int:
    """Modification time of ``path`` in whole seconds since the epoch."""
    return int(path.stat().st_mtime)


def snapshot_dir(root: Path, ignore: Optional[IgnoreMatcher] = None) -> dict[Path, int]:
    """
    Map every regular file under ``root`` (symlinks followed) to its mtime.

    Directories that cannot be listed and entries that are not regular files are
    left out. Failing to read the mtime of a regular file fails the whole walk.
    """
    root = Path(root)
    if not root.is_dir():
        raise SnapshotError(f"Cannot walk {root}: not a directory")

    snapshot: dict[Path, int] = {}
    # (st_dev, st_ino) of each walked directory and its ancestors
    chains: dict[str, frozenset[tuple[int, int]]] = {}

    for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
        base = Path(dirpath)
        try:
            st = base.stat()
        except OSError:
            dirnames[:] = []
            continue

        # symlink loops: only a directory that is its own ancestor is pruned
        key = (st.st_dev, st.st_ino)
        ancestors = chains.get(os.path.dirname(dirpath), frozenset())
        if key in ancestors:
            dirnames[:] = []
            continue
        chains[dirpath] = ancestors | {key}

        if ignore is not None:
            dirnames[:] = [d for d in dirnames if not ignore.is_ignored(base / d, is_dir=True)]

        for name in filenames:
            path = base / name
            if ignore is not None and ignore.is_ignored(path):
                continue
            if not path.is_file():
                continue
            try:
                snapshot[path] = file_mtime(path)
            except OSError as e:
                raise SnapshotError(f"Error reading metadata of {path}: {e}") from e

    return snapshot


def copy_to_dst(path: Path, src_root: Path, dst_root: Path) -> Path:
    """
    Copy ``path`` from under ``src_root`` to the same relative location under ``dst_root``.

    Missing parent directories are created and an existing destination file is
    overwritten. Returns the destination path. Not atomic: a crash mid-copy leaves
    a partial destination file.
    """
    path = Path(path)
    try:
        rel = path.relative_to(src_root)
    except ValueError as e:
        raise CopyError(f"Error stripping prefix {src_root} from {path}: {e}") from e

    dst = Path(dst_root) / rel
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CopyError(f"Error creating directory {dst.parent}: {e}") from e

    try:
        shutil.copy2(path, dst)
    except OSError as e:
        raise CopyError(f"Error copying from {path} to {dst}: {e}") from e
    return dst


# -------------------------
# Initialization
# -------------------------

class EntryKind(enum.Enum):
    DIRECTORY = "directory"
    FILE = "file"
    SYMLINK = "symlink"
    OTHER = "other"


@dataclass(frozen=True)
class DirEntry:
    path: Path
    kind: EntryKind
    reason: str = ""


def classify_entry(path: Path) -> DirEntry:
    if path.is_symlink():
        if path.exists():
            return DirEntry(path, EntryKind.SYMLINK)
        return DirEntry(path, EntryKind.OTHER, "broken symlink")
    if path.is_dir():
        return DirEntry(path, EntryKind.DIRECTORY)
    if path.is_file():
        return DirEntry(path, EntryKind.FILE)
    return DirEntry(path, EntryKind.OTHER, "neither a regular file nor a directory")


def clear_dir(work_dir: Path, logger: logging.Logger) -> None:
    """
    Delete every direct entry of ``work_dir``.

    Symlinks are unlinked without touching their targets. Any other entry kind
    (broken symlinks, sockets, fifos, devices) aborts the clear.
    """
    try:
        entries = [classify_entry(p) for p in sorted(work_dir.iterdir())]
    except OSError as e:
        raise InitializationError(f"Error reading the work directory {work_dir}: {e}") from e

    for entry in entries:
        try:
            if entry.kind is EntryKind.DIRECTORY:
                shutil.rmtree(entry.path)
                log_action(logger, "RMDIR", f"(clear) {entry.path}", path=entry.path, is_dir=True, level=logging.DEBUG)
            elif entry.kind in (EntryKind.FILE, EntryKind.SYMLINK):
                entry.path.unlink()
                log_action(logger, "DELETE", f"(clear) {entry.path}", path=entry.path, is_dir=False, level=logging.DEBUG)
            else:
                raise InitializationError(f"Cannot clear {entry.path}: {entry.reason}")
        except OSError as e:
            raise InitializationError(f"Error clearing {entry.path}: {e}") from e


def populate_dir(work_dir: Path, backup_dir: Path, logger: logging.Logger) -> int:
    try:
        snapshot = snapshot_dir(backup_dir)
    except SnapshotError as e:
        raise InitializationError(f"Error reading the backup directory: {e}") from e

    for path in sorted(snapshot):
        try:
            dst = copy_to_dst(path, backup_dir, work_dir)
        except CopyError as e:
            raise InitializationError(f"Error copying file for initialization: {e}") from e
        log_action(logger, "COPY", f"(init) {path} -> {dst}", path=dst, is_dir=False, level=logging.DEBUG)
    return len(snapshot)


def initialize(work_dir: Path, backup_dir: Path, logger: Optional[logging.Logger] = None) -> int:
    """Clear ``work_dir`` then copy all of ``backup_dir`` into it. Returns the number of files copied."""
    logger = logger or logging.getLogger(LOGGER_NAME)
    work_dir = Path(work_dir)
    backup_dir = Path(backup_dir)

    if not work_dir.is_dir():
        raise InitializationError(f"work_dir must be a directory: {work_dir}")
    if not backup_dir.is_dir():
        raise InitializationError(f"backup_dir must be a directory: {backup_dir}")

    log_action(logger, "INIT", f"Clearing {work_dir}...", path=work_dir, is_dir=True)
    clear_dir(work_dir, logger)
    log_action(logger, "INIT", f"Cleared {work_dir}!", path=work_dir, is_dir=True)

    log_action(logger, "INIT", f"Initializing {work_dir} with the contents of {backup_dir}...", path=work_dir, is_dir=True)
    count = populate_dir(work_dir, backup_dir, logger)
    log_action(logger, "INIT", f"Initialized {work_dir}! ({count} files)", path=work_dir, is_dir=True)
    return count


# -------------------------
# Shared mtime table
# -------------------------

class ReadWriteLock:
    """
    Many readers or one writer.

    Waiting writers block new readers so a steady stream of lookups cannot
    starve an insert.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ModTimeTable:
    """Last-seen modification time per absolute file path. Entries are never removed."""

    def __init__(self):
        self._lock = ReadWriteLock()
        self._times: dict[Path, int] = {}

    def get(self, path: Path) -> Optional[int]:
        with self._lock.read():
            return self._times.get(path)

    def set(self, path: Path, mtime: int) -> None:
        with self._lock.write():
            self._times[path] = mtime

    def items(self) -> dict[Path, int]:
        with self._lock.read():
            return dict(self._times)

    def __contains__(self, path: object) -> bool:
        with self._lock.read():
            return path in self._times

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._times)


# -------------------------
# Sync loop thread
# -------------------------

class Change(enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"


@dataclass
class TickReport:
    added: int = 0
    modified: int = 0
    failed: int = 0
    unchanged: int = 0
    deferred: int = 0

    @property
    def changed(self) -> int:
        return self.added + self.modified + self.failed + self.deferred


class SyncLoop(threading.Thread):
    def __init__(
        self,
        work_dir: Path,
        backup_dir: Path,
        interval_sec: float = DEFAULT_INTERVAL_SEC,
        ignore: Optional[IgnoreMatcher] = None,
        logger: Optional[logging.Logger] = None,
        stop_event: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
    ):
        super().__init__(name="sync-loop", daemon=True)
        self.work_dir = Path(work_dir).absolute()
        self.backup_dir = Path(backup_dir).absolute()
        self.interval_sec = float(interval_sec)
        self.ignore = ignore
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.stop_event = stop_event or threading.Event()
        self.max_workers = max_workers
        self.table = ModTimeTable()
        self.ticks = 0
        self.error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def run(self) -> None:
        self.logger.info("SYNC: started (interval=%.1fs) %s -> %s", self.interval_sec, self.work_dir, self.backup_dir)
        try:
            while not self.stop_event.is_set():
                report = self.tick()
                if report.changed:
                    log_action(
                        self.logger,
                        "SYNC",
                        f"{report.added} added, {report.modified} modified, {report.failed} failed, {report.deferred} deferred",
                    )
                self.stop_event.wait(self.interval_sec)
        except Exception as e:
            self.error = e
            log_action(self.logger, "SYNC_FAIL", f"sync loop stopped: {e}", level=logging.ERROR)
            return
        self.logger.info("SYNC: stopped")

    def tick(self) -> TickReport:
        """Snapshot the working folder and copy every new or modified file to the backup folder."""
        snapshot = snapshot_dir(self.work_dir, self.ignore)
        known = self.table.items()
        candidates = {
            path: mtime
            for path, mtime in snapshot.items()
            if path not in known or mtime > known[path]
        }

        report = TickReport(unchanged=len(snapshot) - len(candidates))
        if candidates:
            workers = len(candidates) if self.max_workers is None else max(1, min(self.max_workers, len(candidates)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync-copy") as pool:
                futures = {}
                try:
                    for path, mtime in candidates.items():
                        futures[pool.submit(self._sync_file, path, mtime)] = path
                except RuntimeError as e:
                    # out of OS threads; files not yet dispatched are picked up by the next tick
                    report.deferred = len(candidates) - len(futures)
                    log_action(
                        self.logger,
                        "SYNC_FAIL",
                        f"Started only {len(futures)} copies ({e}); {report.deferred} files deferred to the next poll",
                        level=logging.WARNING,
                    )
                for fut in as_completed(futures):
                    path = futures[fut]
                    try:
                        change = fut.result()
                    except (CopyError, OSError) as e:
                        report.failed += 1
                        log_action(
                            self.logger,
                            "SYNC_FAIL",
                            f"Error syncing file {path} | {e}",
                            path=path,
                            is_dir=False,
                            level=logging.WARNING,
                        )
                        continue
                    if change is Change.ADDED:
                        report.added += 1
                    elif change is Change.MODIFIED:
                        report.modified += 1
                    else:
                        report.unchanged += 1

        self.ticks += 1
        return report

    def _sync_file(self, path: Path, new_mtime: int) -> Optional[Change]:
        old_mtime = self.table.get(path)

        if old_mtime is None:
            # new files are stamped with the wall clock, not their own mtime
            self.table.set(path, int(time.time()))
            dst = copy_to_dst(path, self.work_dir, self.backup_dir)
            log_action(self.logger, "COPY", f"(added) {path} -> {dst}", path=dst, is_dir=False, level=logging.DEBUG)
            return Change.ADDED

        if new_mtime > old_mtime:
            dst = copy_to_dst(path, self.work_dir, self.backup_dir)
            self.table.set(path, new_mtime)
            log_action(self.logger, "COPY", f"(modified) {path} -> {dst}", path=dst, is_dir=False, level=logging.DEBUG)
            return Change.MODIFIED

        return None


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    cfg = build_config(args)

    logger = setup_logger(cfg.log_dir)

    try:
        work, backup = validate_paths(cfg.work_dir, cfg.backup_dir)
        logger.info("Work  : %s", work)
        logger.info("Backup: %s", backup)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2

    try:
        initialize(work, backup, logger)
    except InitializationError as e:
        logger.error("Initialization failed: %s", e)
        return 1

    stop_event = threading.Event()
    loop = SyncLoop(
        work_dir=work,
        backup_dir=backup,
        interval_sec=DEFAULT_INTERVAL_SEC,
        logger=logger,
        stop_event=stop_event,
    )

    logger.info("Starting backup loop... (Ctrl+C to stop)")
    loop.start()

    try:
        while loop.is_alive():
            loop.join(timeout=0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
        stop_event.set()
        logger.info("Done!")
        return 0

    logger.error("Backup loop failed: %s", loop.error)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
